"""
Approval workflow for high-priority leads.

A supplier saved with priority 1 (or an explicit approval request) is queued
here. An admin approves it, which hands it to an operator for the first call,
or rejects it with a reason the author can see on their dashboard.
"""

"""
Supplier/distributor records.

Records are free-form dicts keyed by spreadsheet column names. They live in a
workbook (one sheet per country) or in the `suppliers_json` table; see
`store.py` for the port both backends implement.
"""

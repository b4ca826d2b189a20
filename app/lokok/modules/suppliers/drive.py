from __future__ import annotations

import html
import logging
import re
import shutil
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_CONFIRM_LINK = re.compile(r'href="(/uc\?export=download[^"]+)"')
_CONFIRM_TOKEN = re.compile(r"confirm=([0-9A-Za-z_-]+)")


class SpreadsheetUnavailable(RuntimeError):
    pass


class DownloadError(RuntimeError):
    pass


def _looks_like_html(body: bytes, content_type: str) -> bool:
    if "text/html" in (content_type or "").lower():
        return True
    head = body[:512].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html")


@dataclass(frozen=True)
class SpreadsheetSource:
    """
    Working copy of the supplier workbook.

    With a file id the workbook is downloaded from Google Drive into the cache
    path and re-downloaded once the cache is older than `max_age_seconds`.
    When the download fails the stale cache is used, then the bundled local
    workbook; only when none exist is SpreadsheetUnavailable raised.
    Without a file id the bundled workbook is used directly.
    """

    file_id: str
    cache_path: Path
    fallback_path: Path
    max_age_seconds: int = 300
    timeout_seconds: int = 30
    retries: int = 2

    def candidate_urls(self) -> list[str]:
        fid = urllib.parse.quote(self.file_id)
        return [
            f"https://docs.google.com/spreadsheets/d/{fid}/export?format=xlsx",
            f"https://drive.google.com/uc?export=download&id={fid}",
        ]

    def cache_is_fresh(self) -> bool:
        if not self.cache_path.exists():
            return False
        age = time.time() - self.cache_path.stat().st_mtime
        return age < self.max_age_seconds

    def _get(self, url: str) -> tuple[bytes, str]:
        req = urllib.request.Request(url, method="GET")
        req.add_header("User-Agent", "lokok-dashboard/1.0")
        with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
            return resp.read(), resp.headers.get("Content-Type", "")

    def _download_url(self, url: str) -> bytes:
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                body, content_type = self._get(url)
                if _looks_like_html(body, content_type):
                    # Large files come back as a "can't scan for viruses" page with a confirm link.
                    text = body.decode("utf-8", errors="ignore")
                    link = _CONFIRM_LINK.search(text)
                    token = _CONFIRM_TOKEN.search(text)
                    if link:
                        body, content_type = self._get("https://drive.google.com" + html.unescape(link.group(1)))
                    elif token:
                        body, content_type = self._get(f"{url}&confirm={token.group(1)}")
                    if _looks_like_html(body, content_type):
                        raise DownloadError(f"HTML page instead of a workbook from {url}")
                if not body:
                    raise DownloadError(f"Empty body from {url}")
                return body
            except urllib.error.HTTPError as e:
                last_err = DownloadError(f"HTTP {e.code} from {url}")
                if 400 <= e.code < 500 and e.code != 429:
                    break
            except (urllib.error.URLError, OSError, DownloadError) as e:
                last_err = e
            time.sleep(min(1 * (attempt + 1), 5))
        raise DownloadError(f"Download failed for {url}: {last_err}")

    def download(self) -> Path:
        errors = []
        for url in self.candidate_urls():
            try:
                data = self._download_url(url)
            except DownloadError as e:
                logger.warning("Spreadsheet download attempt failed: %s", e)
                errors.append(str(e))
                continue
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.cache_path.with_suffix(".part")
            tmp.write_bytes(data)
            tmp.replace(self.cache_path)
            logger.info("Spreadsheet downloaded to %s (%d bytes)", self.cache_path, len(data))
            return self.cache_path
        raise DownloadError("; ".join(errors) or "no candidate URLs")

    def path(self) -> Path:
        """Local path of the workbook to read, downloading when needed."""
        if not self.file_id:
            if self.fallback_path.exists():
                return self.fallback_path
            raise SpreadsheetUnavailable(f"Workbook not found: {self.fallback_path}")

        if self.cache_is_fresh():
            return self.cache_path
        try:
            return self.download()
        except DownloadError as e:
            logger.error("Spreadsheet download failed, falling back: %s", e)

        if self.cache_path.exists():
            logger.warning("Using stale cached spreadsheet %s", self.cache_path)
            return self.cache_path
        if self.fallback_path.exists():
            logger.warning("Using bundled spreadsheet %s", self.fallback_path)
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(self.fallback_path, self.cache_path)
            return self.cache_path
        raise SpreadsheetUnavailable("Spreadsheet unavailable: download failed and no cached or bundled copy exists.")

    def writable_path(self) -> Path:
        """Where edits are saved: the cache when a remote file is configured, else the bundled file."""
        if self.file_id:
            if not self.cache_path.exists():
                self.path()
            return self.cache_path
        return self.fallback_path


def source_from_config(config: dict) -> SpreadsheetSource:
    return SpreadsheetSource(
        file_id=(config.get("GOOGLE_DRIVE_FILE_ID") or "").strip(),
        cache_path=Path(config.get("SPREADSHEET_CACHE_PATH") or "data/cached_spreadsheet.xlsx"),
        fallback_path=Path(config.get("EXCEL_PATH") or "data/Lokok2 Wholesale Dashboard.xlsx"),
        max_age_seconds=int(config.get("SPREADSHEET_CACHE_MAX_AGE") or 300),
    )

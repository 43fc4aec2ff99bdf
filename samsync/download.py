"""Locate SAM export files locally and download the full export when missing."""

from __future__ import annotations

import re
import zipfile
from pathlib import Path

import requests
from loguru import logger
from tenacity import retry
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from samsync.config import FILE_PREFIXES
from samsync.config import SAM_PORTAL_URL
from samsync.config import SAM_XSD_VERSION


VERSION_RE = re.compile(r"^\d+$")
USER_AGENT = "sam-sync/1.0"


def locate_export_files(export_dir: Path, file_types: tuple[str, ...] | list[str]) -> dict[str, Path]:
    """Map each file type to the first matching ``<PREFIX>*.xml`` in ``export_dir``."""
    if not export_dir.exists():
        return {}
    candidates = sorted(p for p in export_dir.iterdir() if p.is_file() and p.suffix.lower() == ".xml")
    located: dict[str, Path] = {}
    for file_type in file_types:
        prefix = FILE_PREFIXES[file_type]
        for path in candidates:
            if path.name.startswith(prefix):
                located[file_type] = path
                break
    return located


class SamExportDownloader:
    def __init__(
        self,
        portal_url: str = SAM_PORTAL_URL,
        xsd_version: str = SAM_XSD_VERSION,
        session: requests.Session | None = None,
    ) -> None:
        self.portal_url = portal_url if portal_url.endswith("/") else portal_url + "/"
        self.xsd_version = xsd_version
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.last_url: str | None = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        reraise=True,
    )
    def latest_version(self) -> str:
        url = f"{self.portal_url}download/samv2-full-getLastVersion"
        resp = self.session.get(url, params={"xsd": self.xsd_version}, timeout=15)
        resp.raise_for_status()
        version = resp.text.strip()
        if not VERSION_RE.match(version):
            raise ValueError(f"Unexpected SAM version response: {version[:80]!r}")
        return version

    def download_full_export(self, version: str, export_dir: Path) -> list[Path]:
        """Download the FULL export zip for ``version`` and extract it into ``export_dir``."""
        url = f"{self.portal_url}download/samv2-download"
        params = {"type": "FULL", "xsd": self.xsd_version, "version": version}
        export_dir.mkdir(parents=True, exist_ok=True)
        zip_path = export_dir / f"sam-full-v{version}.zip"
        part_path = zip_path.with_suffix(".zip.part")

        logger.info("Downloading full SAM export v{} (this may take several minutes)", version)
        with self.session.get(url, params=params, stream=True, timeout=600) as resp:
            resp.raise_for_status()
            self.last_url = resp.url
            with part_path.open("wb") as fp:
                for chunk in resp.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        fp.write(chunk)
        if part_path.stat().st_size == 0:
            part_path.unlink(missing_ok=True)
            raise RuntimeError(f"Downloaded file is empty: {zip_path}")
        part_path.replace(zip_path)

        try:
            with zipfile.ZipFile(zip_path) as archive:
                members = [m for m in archive.namelist() if m.lower().endswith(".xml")]
                archive.extractall(export_dir, members=members)
        finally:
            zip_path.unlink(missing_ok=True)
        return [export_dir / m for m in members]

    def ensure_exports(self, export_dir: Path, file_types: tuple[str, ...] | list[str]) -> dict[str, Path]:
        """Return located export files, downloading the full export if any are missing.

        Download failures are logged and reported as missing files.
        """
        located = locate_export_files(export_dir, file_types)
        missing = [t for t in file_types if t not in located]
        if not missing:
            return located

        logger.info("Missing exports {}, fetching latest SAM version", missing)
        try:
            version = self.latest_version()
            self.download_full_export(version, export_dir)
        except (requests.RequestException, zipfile.BadZipFile, OSError, RuntimeError, ValueError) as exc:
            logger.error("SAM export download failed: {}. Place XML files in {} manually.", exc, export_dir)
            return located
        return locate_export_files(export_dir, file_types)

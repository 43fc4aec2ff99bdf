from __future__ import annotations

import io
import zipfile

import requests

from conftest import EXPORT_FILES
from conftest import write_export
from samsync.download import SamExportDownloader
from samsync.download import locate_export_files


class _FakeResponse:
    def __init__(self, text: str = "", content: bytes = b"", status: int = 200, url: str = "") -> None:
        self.text = text
        self.content = content
        self.status_code = status
        self.url = url

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size: int = 1024):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


class _FakeSession:
    def __init__(self, responses: dict[str, _FakeResponse]) -> None:
        self.headers: dict[str, str] = {}
        self.responses = responses
        self.calls: list[tuple[str, dict]] = []

    def get(self, url: str, params: dict | None = None, **kwargs) -> _FakeResponse:
        self.calls.append((url, params or {}))
        for suffix, response in self.responses.items():
            if url.endswith(suffix):
                return response
        raise requests.ConnectionError(url)


def _zip_of(*file_types: str) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for file_type in file_types:
            filename, content = EXPORT_FILES[file_type]
            archive.writestr(filename, content)
        archive.writestr("README.txt", "not an export")
    return buffer.getvalue()


def test_locate_export_files_matches_prefixes(tmp_path):
    export_dir = write_export(tmp_path / "export", skip=("RMB",))
    (export_dir / "notes.txt").write_text("ignored")

    located = locate_export_files(export_dir, ["AMP", "RMB", "CHAPTERIV"])

    assert located == {
        "AMP": export_dir / EXPORT_FILES["AMP"][0],
        "CHAPTERIV": export_dir / EXPORT_FILES["CHAPTERIV"][0],
    }


def test_locate_export_files_on_missing_directory(tmp_path):
    assert locate_export_files(tmp_path / "nope", ["AMP"]) == {}


def test_ensure_exports_skips_network_when_files_present(tmp_path):
    export_dir = write_export(tmp_path / "export")
    session = _FakeSession({})

    located = SamExportDownloader(session=session).ensure_exports(export_dir, ["AMP", "VMP"])

    assert set(located) == {"AMP", "VMP"}
    assert session.calls == []


def test_ensure_exports_downloads_and_extracts_full_export(tmp_path):
    export_dir = tmp_path / "export"
    session = _FakeSession(
        {
            "samv2-full-getLastVersion": _FakeResponse(text="1234\n"),
            "samv2-download": _FakeResponse(
                content=_zip_of("AMP", "VMP"), url="https://example.test/samv2-download?version=1234"
            ),
        }
    )
    downloader = SamExportDownloader(portal_url="https://example.test/sam", session=session)

    located = downloader.ensure_exports(export_dir, ["AMP", "VMP"])

    assert set(located) == {"AMP", "VMP"}
    assert not list(export_dir.glob("*.zip*"))
    assert not (export_dir / "README.txt").exists()
    assert downloader.last_url.endswith("version=1234")
    assert session.calls[0] == ("https://example.test/sam/download/samv2-full-getLastVersion", {"xsd": "5"})
    assert session.calls[1][1] == {"type": "FULL", "xsd": "5", "version": "1234"}
    assert session.headers["User-Agent"] == "sam-sync/1.0"


def test_ensure_exports_returns_located_files_when_download_fails(tmp_path):
    export_dir = write_export(tmp_path / "export", skip=("RMB",))
    session = _FakeSession({"samv2-full-getLastVersion": _FakeResponse(status=503)})

    located = SamExportDownloader(session=session).ensure_exports(export_dir, ["AMP", "RMB"])

    assert set(located) == {"AMP"}


def test_unexpected_version_response_is_reported_as_missing(tmp_path):
    session = _FakeSession({"samv2-full-getLastVersion": _FakeResponse(text="<html>maintenance</html>")})

    located = SamExportDownloader(session=session).ensure_exports(tmp_path / "export", ["AMP"])

    assert located == {}
    assert len(session.calls) == 1

from pathlib import Path

from perplexport.exporter.artifacts import capture_url_artifacts
from perplexport.exporter.error_codes import DownloadError, ErrorCode, ExportError, FatalLocalError, RemoteAPIError
from tests.fakes import FakeAPIResponse, FakeRequestContext

URL = "https://ppl-ai-file-upload.s3.amazonaws.com/web/chart.png"


def test_export_errors_carry_default_codes() -> None:
    assert RemoteAPIError("x").error_code == ErrorCode.REMOTE_API
    assert FatalLocalError("x").error_code == ErrorCode.FATAL_LOCAL
    assert ExportError("x").error_code == ErrorCode.INTERNAL
    assert ExportError("x", error_code=ErrorCode.PARSE_AMBIGUOUS).error_code == ErrorCode.PARSE_AMBIGUOUS


def test_download_error_reports_rate_limit() -> None:
    error = DownloadError(ErrorCode.RATE_LIMITED, "slow down", http_status=429)

    assert error.is_rate_limited
    assert error.http_status == 429
    assert str(error) == "slow down"


def test_http_429_artifact_is_recorded_as_skipped(tmp_path: Path) -> None:
    context = FakeRequestContext({URL: FakeAPIResponse(429)})

    capture = capture_url_artifacts(context, {"entries": [{"url": URL}]}, tmp_path, "t1")

    assert capture.local_files == {}
    assert capture.skipped == [{"url": URL, "error": "HTTP 429"}]

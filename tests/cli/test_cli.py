from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from conftest import make_quota
from ddx.cli.commands import cli
from ddx.core.config import ConfigManager
from ddx.core.orchestrator import InitiationFailure
from ddx.core.transfer_log import TransferLogEntry, TransferLogger


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_run_upload():
    with patch("ddx.cli.commands._run_upload", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def mock_portal_client():
    with patch("ddx.cli.commands.PortalClient") as mock:
        client = mock.return_value
        client.get_quota = AsyncMock(return_value=make_quota())
        client.initiate_batch = AsyncMock()
        client.close = AsyncMock()
        yield mock


@pytest.fixture
def photo(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"x" * 1024)
    return str(path)


def single_snapshot(state="success", error=None):
    return {
        "mode": "single",
        "state": state,
        "quota": "0.5GB / 2GB",
        "transfer": {
            "id": "s1",
            "name": "photo.jpg",
            "size": 1024,
            "state": state,
            "progress": 100 if state == "success" else 40,
            "error": error,
            "result_id": "abc" if state == "success" else None,
            "download_url": "http://p.test/download/abc" if state == "success" else None,
        },
    }


def test_upload_single_success(runner, mock_run_upload, photo):
    mock_run_upload.return_value = single_snapshot()

    result = runner.invoke(cli, ["upload", photo])

    assert result.exit_code == 0
    assert "Your file has been uploaded successfully" in result.output
    assert "Daily usage: 0.5GB / 2GB" in result.output
    files, _, authenticated = mock_run_upload.call_args.args
    assert [f.name for f in files] == ["photo.jpg"]
    assert authenticated is False


def test_upload_single_failure_exits_nonzero(runner, mock_run_upload, photo):
    mock_run_upload.return_value = single_snapshot("error", "Connection lost")

    result = runner.invoke(cli, ["upload", photo])

    assert result.exit_code == 1
    assert "Upload failed: Connection lost" in result.output


def test_upload_cancelled(runner, mock_run_upload, photo):
    mock_run_upload.return_value = single_snapshot("cancelled")

    result = runner.invoke(cli, ["upload", photo])

    assert result.exit_code == 0
    assert "Upload was cancelled" in result.output


def test_upload_batch_reports_errors(runner, mock_run_upload, tmp_path):
    paths = []
    for name in ("a.jpg", "b.jpg"):
        (tmp_path / name).write_bytes(b"x")
        paths.append(str(tmp_path / name))
    mock_run_upload.return_value = {
        "mode": "batch",
        "state": "success",
        "quota": None,
        "transfer": {
            "batch_id": "b1",
            "state": "success",
            "terminal": True,
            "succeeded": 1,
            "failed": 1,
            "cancelled": 0,
            "download_url": "http://p.test/batch-download/b1",
            "files": [
                {"name": "a.jpg", "size": 1, "state": "success", "progress": 100},
                {"name": "b.jpg", "size": 1, "state": "error", "progress": 0, "error": "boom"},
            ],
        },
    }

    result = runner.invoke(cli, ["upload", *paths])

    assert result.exit_code == 0
    assert "2 files have been uploaded (1 with errors)" in result.output
    assert "Download link:" in result.output


def test_upload_missing_file(runner, mock_run_upload, tmp_path):
    result = runner.invoke(cli, ["upload", str(tmp_path / "missing.jpg")])

    assert result.exit_code == 1
    assert "does not exist" in result.output
    mock_run_upload.assert_not_called()


def test_upload_six_files_is_rejected(runner, mock_portal_client, tmp_path):
    paths = []
    for i in range(6):
        path = tmp_path / f"f{i}.jpg"
        path.write_bytes(b"x")
        paths.append(str(path))

    result = runner.invoke(cli, ["upload", *paths])

    assert result.exit_code == 1
    assert "maximum of 5 files" in result.output
    client = mock_portal_client.return_value
    client.initiate_batch.assert_not_called()
    client.close.assert_awaited_once()


def test_upload_initiation_failure(runner, mock_run_upload, photo):
    mock_run_upload.side_effect = InitiationFailure("Batch initiation failed: 500")

    result = runner.invoke(cli, ["upload", photo])

    assert result.exit_code == 1
    assert "Batch could not be started" in result.output


def test_upload_uses_stored_token(runner, mock_run_upload, photo):
    ConfigManager().set_token("secret")
    mock_run_upload.return_value = single_snapshot()

    runner.invoke(cli, ["upload", photo])

    assert mock_run_upload.call_args.args[2] is True


def test_quota_command(runner):
    with patch("ddx.cli.commands._fetch_quota", new_callable=AsyncMock) as mock_fetch:
        mock_fetch.return_value = make_quota(daily_gb=2, used_gb=1.9)

        result = runner.invoke(cli, ["quota"])

    assert result.exit_code == 0
    assert "Guest" in result.output
    assert "95%" in result.output


def test_quota_command_unavailable(runner):
    with patch("ddx.cli.commands._fetch_quota", new_callable=AsyncMock) as mock_fetch:
        mock_fetch.return_value = None

        result = runner.invoke(cli, ["quota"])

    assert result.exit_code == 0
    assert "Quota information unavailable" in result.output


def test_login_and_logout(runner):
    result = runner.invoke(cli, ["login", "--token", "secret"])

    assert result.exit_code == 0
    assert ConfigManager().config.access_token == "secret"

    result = runner.invoke(cli, ["logout"])

    assert result.exit_code == 0
    assert "Signed out" in result.output
    assert ConfigManager().config.access_token is None


def test_config_show_masks_token(runner):
    ConfigManager().set_token("secret")

    result = runner.invoke(cli, ["config", "show"])

    assert result.exit_code == 0
    assert "secret" not in result.output
    assert "********" in result.output


def test_config_set(runner):
    result = runner.invoke(cli, ["config", "set", "chunk_size", "1024"])

    assert result.exit_code == 0
    assert ConfigManager().config.chunk_size == 1024


def test_config_set_unknown_key(runner):
    result = runner.invoke(cli, ["config", "set", "colour", "blue"])

    assert result.exit_code == 1
    assert "Unknown setting" in result.output


def test_logs_empty(runner):
    result = runner.invoke(cli, ["logs"])

    assert result.exit_code == 0
    assert "No transfer logs found" in result.output


def test_logs_with_files(runner):
    TransferLogger().add_entry(TransferLogEntry(
        timestamp=datetime.now().isoformat(),
        upload_type="batch",
        outcome="success",
        successful_files=["a.jpg"],
        failed_files=["b.jpg"],
        cancelled_files=[],
        total_size=2048,
        duration=3.2,
        batch_id="b1",
    ))

    result = runner.invoke(cli, ["logs", "--show-files"])

    assert result.exit_code == 0
    assert "✓ a.jpg" in result.output
    assert "✗ b.jpg" in result.output
    assert "1/2" in result.output
    assert "2.0 KB" in result.output

import os
from pathlib import Path
import subprocess
import sys

from reportsync.db_models import utc_now
from reportsync.periods import enumerate_periods, timezone_for_country
from reportsync.schemas import Aggregation


ACCOUNT_ARGS = ["--account-id", "ACC-1", "--country-code", "US"]


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'cli.db'}"
    env["DATASET_TYPES"] = "daily:target"
    env["DAILY_RETENTION_MONTHS"] = "1"
    env["REPORT_API_BASE_URL"] = "http://127.0.0.1:9"
    env["MAX_STEP_RETRIES"] = "1"
    env["RETRY_BACKOFF_SECONDS"] = "0"
    return env


def _run(tmp_path: Path, *args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "reportsync.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env or _base_env(tmp_path),
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_registers_and_lists_accounts(tmp_path: Path) -> None:
    added = _run(tmp_path, "accounts", "add", *ACCOUNT_ARGS, "--profile-id", "PROFILE-1")
    disabled = _run(tmp_path, "accounts", "disable", *ACCOUNT_ARGS)
    listed = _run(tmp_path, "accounts", "list")

    assert added.returncode == 0
    assert "account_id=ACC-1 country=US profile_id=PROFILE-1 enabled=True" in added.stdout
    assert disabled.returncode == 0
    assert "enabled=False" in disabled.stdout
    assert listed.returncode == 0
    assert "account_id=ACC-1" in listed.stdout


def test_cli_reconcile_then_status(tmp_path: Path) -> None:
    _run(tmp_path, "accounts", "add", *ACCOUNT_ARGS, "--profile-id", "PROFILE-1")

    reconciled = _run(tmp_path, "reconcile", *ACCOUNT_ARGS)
    again = _run(tmp_path, "reconcile", *ACCOUNT_ARGS)
    status = _run(tmp_path, "status", *ACCOUNT_ARGS)

    assert reconciled.returncode == 0
    assert "inserted=31 deleted=0" in reconciled.stdout
    assert "inserted=0 deleted=0" in again.stdout
    assert "aggregation=daily entity_type=target status=missing count=31" in status.stdout


def test_cli_reprocess_makes_dataset_due(tmp_path: Path) -> None:
    _run(tmp_path, "accounts", "add", *ACCOUNT_ARGS, "--profile-id", "PROFILE-1")
    _run(tmp_path, "reconcile", *ACCOUNT_ARGS)
    period_start = enumerate_periods(utc_now(), timezone_for_country("US"), Aggregation.DAILY, 1)[3]

    proc = _run(
        tmp_path,
        "reprocess",
        *ACCOUNT_ARGS,
        "--aggregation",
        "daily",
        "--entity-type",
        "target",
        "--period-start",
        period_start.isoformat(),
    )

    assert proc.returncode == 0
    assert f"period_start={period_start.isoformat()}" in proc.stdout


def test_cli_refresh_unknown_dataset_fails(tmp_path: Path) -> None:
    proc = _run(
        tmp_path,
        "refresh",
        *ACCOUNT_ARGS,
        "--aggregation",
        "daily",
        "--entity-type",
        "target",
        "--period-start",
        "2024-06-01T07:00:00",
    )

    assert proc.returncode == 1
    assert "error:" in proc.stdout


def test_cli_refresh_account_requires_registered_account(tmp_path: Path) -> None:
    proc = _run(tmp_path, "refresh-account", *ACCOUNT_ARGS)

    assert proc.returncode == 1
    assert "advertiser account not found" in proc.stdout


def test_cli_rejects_invalid_dataset_types(tmp_path: Path) -> None:
    env = _base_env(tmp_path)
    env["DATASET_TYPES"] = "weekly:target"

    proc = _run(tmp_path, "status", *ACCOUNT_ARGS, env=env)

    assert proc.returncode == 1
    assert "error: invalid configuration" in proc.stdout

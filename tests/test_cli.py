"""Tests for the command line interface."""

from __future__ import annotations

import json
from collections.abc import Iterator

import pytest
from typer.testing import CliRunner

from escrow_reconciler import cli
from escrow_reconciler.config import clear_settings_cache
from escrow_reconciler.service import ControlResult

runner = CliRunner()


class StubService:
    """Stands in for ReconciliationService; records the calls it receives."""

    calls: list[tuple] = []

    def __init__(self, settings) -> None:
        self.settings = settings

    async def get_sync_status(self) -> ControlResult:
        StubService.calls.append(("status",))
        return ControlResult(True, "ok", {"status": "ACTIVE", "blocks_behind": 4})

    async def resync_from_block(self, block_number: int) -> ControlResult:
        StubService.calls.append(("resync", block_number))
        return ControlResult(False, f"resync from block {block_number} did not complete: stopped")

    async def reconcile_escrow(self, escrow_ref: str) -> ControlResult:
        StubService.calls.append(("reconcile_escrow", escrow_ref))
        return ControlResult(True, "reconciled", {"processed": 2})

    async def run_consistency_check(self, *, deep: bool = False) -> ControlResult:
        StubService.calls.append(("audit", deep))
        return ControlResult(True, "0 issue(s) found", {"issues_found": 0})

    async def close(self) -> None:
        StubService.calls.append(("close",))


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.delenv("CHAIN_ESCROW_CONTRACT_ADDRESS", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    clear_settings_cache()
    StubService.calls = []
    yield
    clear_settings_cache()


@pytest.fixture
def stub_service(monkeypatch: pytest.MonkeyPatch) -> type[StubService]:
    monkeypatch.setattr(cli, "ReconciliationService", StubService)
    return StubService


class TestCli:
    """Tests for the typer app."""

    def test_version(self) -> None:
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert "escrow-reconciler version 0.1.0" in result.output

    def test_run_requires_contract_address(self) -> None:
        result = runner.invoke(cli.app, ["run"])

        assert result.exit_code == 1
        assert "CHAIN_ESCROW_CONTRACT_ADDRESS" in result.output

    def test_invalid_configuration_is_reported(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "mysql://localhost/escrow")

        result = runner.invoke(cli.app, ["status"])

        assert result.exit_code == 1
        assert "Configuration errors" in result.output

    def test_status_as_json(self, stub_service: type[StubService]) -> None:
        result = runner.invoke(cli.app, ["status", "--json"])

        assert result.exit_code == 0
        payload = json.loads(result.output.strip().splitlines()[-1])
        assert payload["success"] is True
        assert payload["data"]["blocks_behind"] == 4
        assert stub_service.calls == [("status",), ("close",)]

    def test_failed_operation_exits_nonzero(self, stub_service: type[StubService]) -> None:
        result = runner.invoke(cli.app, ["resync", "120"])

        assert result.exit_code == 1
        assert "did not complete" in result.output
        assert ("resync", 120) in stub_service.calls

    def test_negative_resync_block_is_rejected(self, stub_service: type[StubService]) -> None:
        result = runner.invoke(cli.app, ["resync", "--", "-5"])

        assert result.exit_code != 0
        assert stub_service.calls == []

    def test_reconcile_single_escrow(self, stub_service: type[StubService]) -> None:
        result = runner.invoke(cli.app, ["reconcile", "--escrow", "0xabc"])

        assert result.exit_code == 0
        assert "processed: 2" in result.output
        assert ("reconcile_escrow", "0xabc") in stub_service.calls

    def test_deep_audit(self, stub_service: type[StubService]) -> None:
        result = runner.invoke(cli.app, ["audit", "--deep"])

        assert result.exit_code == 0
        assert ("audit", True) in stub_service.calls

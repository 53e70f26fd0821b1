import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from staking_relayer.jobqueue.constants import JOB_MANUAL_UPDATE, OPTIONS_QUEUE
from staking_relayer.jobqueue.db import JobQueueDB
from staking_relayer.ledger.constants import TxStatus
from staking_relayer.ledger.db import LedgerDB
from staking_relayer.ledger.models import StakingTransaction
from staking_relayer.relayer.cli import relayer_cli

ADAPTER = "0x1111111111111111111111111111111111111111"
USER = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
WETH = "0x0fe44892c3279c09654f3590cf6cedac3fc3ccdc"


@pytest.fixture
def config_path(tmp_path, clean_env):
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "network": "sepolia",
                "data_dir": str(tmp_path / "data"),
                "rpc_urls": {"sepolia": "http://127.0.0.1:8545"},
                "router_address": "0x9999999999999999999999999999999999999999",
            }
        )
    )
    return path


def _invoke(config_path, *args):
    result = CliRunner().invoke(relayer_cli, ["--config", str(config_path), *args])
    return result, json.loads(result.output) if result.output.strip() else None


def test_missing_config_file_fails(tmp_path, clean_env):
    result = CliRunner().invoke(
        relayer_cli, ["--config", str(tmp_path / "nope.json"), "options"]
    )
    assert result.exit_code == 1
    assert json.loads(result.output)["ok"] is False


def test_option_create_list_and_deactivate(config_path):
    result, body = _invoke(
        config_path,
        "option-create",
        "--protocol", "Aave V3",
        "--token", "weth",
        "--apy", "1.9",
        "--tvl-usd", "2500000000",
        "--risk", "low",
        "--adapter", ADAPTER,
    )
    assert result.exit_code == 0, result.output
    assert body["result"]["id"] == "aave-v3-weth-sepolia"
    assert body["result"]["tvl"] == "$2.50B"
    assert body["result"]["risk"] == "Low"

    _, listed = _invoke(config_path, "options")
    assert [o["id"] for o in listed["result"]] == ["aave-v3-weth-sepolia"]

    result, body = _invoke(config_path, "option-set-active", "aave-v3-weth-sepolia", "--inactive")
    assert result.exit_code == 0
    assert body["result"]["is_active"] is False
    _, listed = _invoke(config_path, "options")
    assert listed["result"] == []
    _, listed = _invoke(config_path, "options", "--all")
    assert len(listed["result"]) == 1


def test_duplicate_option_is_an_error(config_path):
    args = ("option-create", "--protocol", "Lido", "--token", "WETH", "--apy", "3",
            "--tvl-usd", "1000", "--adapter", ADAPTER)
    _invoke(config_path, *args)
    result, body = _invoke(config_path, *args)
    assert result.exit_code == 1
    assert body["ok"] is False
    assert body["error"] == "ValueError"


def test_invalid_adapter_is_rejected(config_path):
    result, body = _invoke(
        config_path, "option-create", "--protocol", "Lido", "--token", "WETH",
        "--apy", "3", "--tvl-usd", "1000", "--adapter", "not-an-address",
    )
    assert result.exit_code == 1
    assert body["ok"] is False


def test_set_active_unknown_option(config_path):
    result, body = _invoke(config_path, "option-set-active", "missing-id")
    assert result.exit_code == 1
    assert body["error"] == "KeyError"
    assert "missing-id" in body["details"]


def test_login_then_user(config_path):
    result, body = _invoke(config_path, "login", USER)
    assert result.exit_code == 0
    assert body["result"]["address"] == USER.lower()

    _, body = _invoke(config_path, "user", USER.upper().replace("0X", "0x"))
    assert body["result"]["address"] == USER.lower()
    assert body["result"]["last_login_at"] is not None


def test_unknown_user(config_path):
    result, body = _invoke(config_path, "user", USER)
    assert result.exit_code == 1
    assert body["ok"] is False


def test_sync_options_enqueues_manual_update(config_path, tmp_path):
    result, body = _invoke(config_path, "sync-options")
    assert result.exit_code == 0
    assert body["result"]["queue"] == OPTIONS_QUEUE

    queue_db = JobQueueDB(tmp_path / "data" / "queue.db")
    try:
        job = queue_db.get_job(body["result"]["job_id"])
        assert job.name == JOB_MANUAL_UPDATE
    finally:
        queue_db.close()

    _, listed = _invoke(config_path, "jobs", "--queue", OPTIONS_QUEUE)
    assert listed["result"]["counts"][OPTIONS_QUEUE]["WAITING"] == 1
    assert listed["result"]["jobs"][0]["name"] == JOB_MANUAL_UPDATE


def test_retry_job_requires_failed_job(config_path):
    _, body = _invoke(config_path, "sync-options")
    result, body = _invoke(config_path, "retry-job", str(body["result"]["job_id"]))
    assert result.exit_code == 1
    assert body["error"] == "ValueError"


def test_transactions_and_status_override(config_path, tmp_path):
    tx_hash = "0x" + "ab" * 32
    ledger = LedgerDB(tmp_path / "data" / "ledger.db")
    try:
        ledger.confirm_stake(
            StakingTransaction(
                tx_hash=tx_hash,
                user_address=USER,
                token="WETH",
                token_address=WETH,
                amount="1.5",
                protocol="Lido",
                adapter_address=ADAPTER,
                status=TxStatus.CONFIRMED,
                fee="0",
                network="sepolia",
            )
        )
    finally:
        ledger.close()

    _, body = _invoke(config_path, "transactions", USER)
    assert [t["tx_hash"] for t in body["result"]] == [tx_hash]
    assert body["result"][0]["amount"] == "1.5"

    result, body = _invoke(config_path, "tx-status", tx_hash, "failed")
    assert result.exit_code == 0
    assert body["result"]["status"] == "failed"

    result, body = _invoke(config_path, "tx-status", tx_hash, "bogus")
    assert result.exit_code == 1
    assert body["error"] == "ValueError"


def test_stake_requires_signing_key(config_path):
    result, body = _invoke(config_path, "stake", USER, "WETH", "1000", "lido-weth-sepolia")
    assert result.exit_code == 1
    assert body["error"] == "ConfigurationError"


def test_stake_rpc_failure_is_reported_as_json(config_path):
    config = json.loads(config_path.read_text())
    config["relayer_private_key"] = "0x" + "11" * 32
    config_path.write_text(json.dumps(config))
    _invoke(
        config_path, "option-create", "--protocol", "Lido", "--token", "ETH",
        "--apy", "3", "--tvl-usd", "1000", "--adapter", ADAPTER,
    )
    router = MagicMock()
    router.sign_callback = AsyncMock()
    router.from_address = USER
    router.is_adapter_supported = AsyncMock(side_effect=ConnectionError("rpc unreachable"))

    with patch("staking_relayer.relayer.cli.RouterClient") as router_cls:
        router_cls.with_private_key.return_value = router
        result, body = _invoke(config_path, "stake", USER, "ETH", "1000", "lido-eth-sepolia")

    assert result.exit_code == 1
    assert body["ok"] is False
    assert body["error"] == "ChainReadError"
    assert "rpc unreachable" in body["details"]
    router.stake.assert_not_called()

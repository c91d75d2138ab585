import json

import pytest

from conftest import CONTRACT, FAST_THROTTLE
from ledger_sync.cli import build_parser, main


def write_config(tmp_path):
    path = tmp_path / "config.json"
    raw = {
        "HTTP_RPC_URL": "http://rpc.invalid",
        "SQLITE_PATH": str(tmp_path / "ledger.db"),
        "CONTRACTS": [{"address": CONTRACT, "name": "test-editions", "standard": "erc1155", "start_block": 100}],
        "THROTTLE": FAST_THROTTLE,
        "LOG_LEVEL": "warning",
    }
    path.write_text(json.dumps(raw), encoding="utf-8")
    return str(path)


def test_parser_reads_ranges_and_flags():
    args = build_parser().parse_args(["validate", "--contract", CONTRACT, "--from", "5", "--to", "9", "--fix"])
    assert (args.command, args.contract, args.from_block, args.to_block, args.fix) == (
        "validate", CONTRACT, 5, 9, True,
    )
    assert build_parser().parse_args(["serve", "--no-api"]).no_api is True


def test_status_prints_json(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", write_config(tmp_path), "status"])
    assert exc.value.code == 0
    out = json.loads(capsys.readouterr().out)
    assert out[CONTRACT]["eventCount"] == 0
    assert out[CONTRACT]["cursor"]["status"] == "idle"


def test_rebuild_on_empty_ledger(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc:
        main(["--config", write_config(tmp_path), "rebuild", "--contract", CONTRACT])
    assert exc.value.code == 0
    assert json.loads(capsys.readouterr().out)[CONTRACT]["positions"] == 0


def test_unknown_contract_is_a_config_error(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["--config", write_config(tmp_path), "status", "--contract", "0x" + "1" * 40])
    assert "not configured" in str(exc.value.code)


def test_missing_config_file(tmp_path):
    with pytest.raises(SystemExit) as exc:
        main(["--config", str(tmp_path / "nope.json"), "status"])
    assert "config error" in str(exc.value.code)

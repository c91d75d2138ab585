import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import Any, Dict, List, Optional

from .config import AppConfig, load_config
from .errors import ConfigError, FetchCancelled
from .service import LedgerSyncService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _selected(cfg: AppConfig, contract: Optional[str]) -> List[str]:
    if contract:
        cc = cfg.get_contract(contract)
        if cc is None:
            raise ConfigError(f"contract is not configured: {contract}")
        return [cc.address]
    return [c.address for c in cfg.contracts]


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def cmd_sync(service: LedgerSyncService, args) -> bool:
    results: Dict[str, Any] = {}
    ok = True
    for address in _selected(service.cfg, args.contract):
        summary = await service.sync_contract(
            address, args.from_block, args.to_block, cancel_event=service.stop_event
        )
        results[address] = summary.to_dict()
        ok = ok and summary.ok
    _print(results)
    return ok


async def cmd_validate(service: LedgerSyncService, args) -> bool:
    results: Dict[str, Any] = {}
    ok = True
    for address in _selected(service.cfg, args.contract):
        try:
            out = await service.validate_contract(
                address, args.fix, args.from_block, args.to_block, cancel_event=service.stop_event
            )
        except FetchCancelled:
            results[address] = {"error": "canceled"}
            ok = False
            break
        results[address] = out
        ok = ok and (out["cleared"] if args.fix else out["ok"])
    _print(results)
    return ok


async def cmd_rebuild(service: LedgerSyncService, args) -> bool:
    results = {a: service.rebuild_contract(a) for a in _selected(service.cfg, args.contract)}
    _print(results)
    return all(not r["negatives"] for r in results.values())


async def cmd_status(service: LedgerSyncService, args) -> bool:
    _print({a: service.contract_status(a) for a in _selected(service.cfg, args.contract)})
    return True


async def cmd_serve(service: LedgerSyncService, args) -> bool:
    await service.run(enable_api=not args.no_api)
    return True


COMMANDS = {
    "sync": cmd_sync,
    "validate": cmd_validate,
    "rebuild": cmd_rebuild,
    "status": cmd_status,
    "serve": cmd_serve,
}


async def main_async(cfg: AppConfig, args) -> bool:
    async with LedgerSyncService(cfg) as service:
        loop = asyncio.get_running_loop()

        def _on_stop() -> None:
            logger.info("stop requested")
            service.stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        return await COMMANDS[args.command](service, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ERC-721/1155 transfer ledger sync and reconciliation"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def with_range(p: argparse.ArgumentParser) -> None:
        p.add_argument("--contract", help="only this contract address")
        p.add_argument("--from", dest="from_block", type=int, default=None, help="first block")
        p.add_argument("--to", dest="to_block", type=int, default=None, help="last block")

    with_range(sub.add_parser("sync", help="scan new blocks and update holder positions"))
    p = sub.add_parser("validate", help="compare local events with upstream")
    with_range(p)
    p.add_argument("--fix", action="store_true", help="backfill discrepant windows and rebuild")
    p = sub.add_parser("rebuild", help="rebuild holder positions from stored events")
    p.add_argument("--contract", help="only this contract address")
    p = sub.add_parser("status", help="print cursor and reconciliation status")
    p.add_argument("--contract", help="only this contract address")
    p = sub.add_parser("serve", help="periodic sync plus HTTP API")
    p.add_argument("--no-api", action="store_true", help="run periodic sync without the API")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as e:
        raise SystemExit(f"config error: {e}") from e
    setup_logging(cfg.log_level)

    try:
        ok = asyncio.run(main_async(cfg, args))
    except KeyboardInterrupt:
        ok = False
    except ConfigError as e:
        raise SystemExit(f"config error: {e}") from e
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()

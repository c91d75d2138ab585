import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from aiohttp import web

from .api import create_api_app
from .config import AppConfig, ContractConfig
from .coordinator import SyncCoordinator, SyncSummary
from .errors import FetchCancelled
from .fetcher import RateAdaptiveFetcher
from .materializer import StateMaterializer
from .reconciler import ReconciliationEngine
from .rpc import RPCClient
from .scanner import ChunkedLogScanner
from .store import Storage
from .utils import normalize_address

logger = logging.getLogger(__name__)

JOB_FINAL = {"done", "failed", "canceled"}
MAX_FINISHED_JOBS = 200


class LedgerSyncService:
    """Wires the pipeline for every configured contract.

    Each contract gets its own fetchers, scanners, coordinator and
    reconciler so that throttle state and cancellation stay per contract;
    storage and the materializer are shared.
    """

    def __init__(self, cfg: AppConfig, rpc=None, storage: Optional[Storage] = None):
        self.cfg = cfg
        self.rpc = rpc or RPCClient(cfg.http_rpc_url, cfg.max_rpc_retries, cfg.rpc_timeout_sec)
        self._owns_rpc = rpc is None
        self.storage = storage or Storage(cfg.sqlite_path)
        self.materializer = StateMaterializer(self.storage)
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.job_cancel_events: Dict[str, asyncio.Event] = {}
        self.locks: Dict[str, asyncio.Lock] = {}
        self.coordinators: Dict[str, SyncCoordinator] = {}
        self.reconcilers: Dict[str, ReconciliationEngine] = {}
        for cc in cfg.contracts:
            scanner = ChunkedLogScanner.from_config(RateAdaptiveFetcher(self.rpc, cfg.throttle), cfg)
            self.coordinators[cc.address] = SyncCoordinator(
                cfg, self.rpc, self.storage, scanner, self.materializer
            )
            validation_scanner = ChunkedLogScanner.from_config(
                RateAdaptiveFetcher(self.rpc, cfg.throttle),
                cfg,
                window_blocks=cfg.validation_window_blocks,
            )
            self.reconcilers[cc.address] = ReconciliationEngine(
                cfg, self.storage, validation_scanner, self.materializer
            )
        self.stats: Dict[str, Any] = {"syncRuns": 0, "syncFailures": 0, "lastSync": {}}

    async def __aenter__(self) -> "LedgerSyncService":
        if self._owns_rpc:
            await self.rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
        if self._owns_rpc:
            await self.rpc.__aexit__(exc_type, exc, tb)
        self.storage.close()

    def contract(self, address: str) -> ContractConfig:
        cc = self.cfg.get_contract(address)
        if cc is None:
            raise KeyError(normalize_address(address))
        return cc

    def lock_for(self, address: str) -> asyncio.Lock:
        return self.locks.setdefault(address, asyncio.Lock())

    async def sync_contract(
        self,
        address: str,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncSummary:
        cc = self.contract(address)
        async with self.lock_for(cc.address):
            summary = await self.coordinators[cc.address].run(
                cc.address, from_block, to_block, cancel_event=cancel_event
            )
        self.stats["syncRuns"] += 1
        if not summary.ok:
            self.stats["syncFailures"] += 1
        self.stats["lastSync"][cc.address] = {
            "status": summary.status,
            "finishedAt": summary.finished_at,
            "lastSyncedBlock": summary.last_synced_block,
        }
        return summary

    async def validate_contract(
        self,
        address: str,
        fix: bool = False,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Validate (or auto-fix) one contract; raises ``FetchCancelled`` when canceled."""
        cc = self.contract(address)
        reconciler = self.reconcilers[cc.address]
        async with self.lock_for(cc.address):
            if fix:
                result = await reconciler.auto_fix(cc.address, from_block, to_block, cancel_event)
                return result.to_dict()
            report = await reconciler.validate(cc.address, from_block, to_block, cancel_event)
            return report.to_dict()

    def rebuild_contract(self, address: str) -> Dict[str, Any]:
        cc = self.contract(address)
        return self.materializer.rebuild_all(cc.address).to_dict()

    def contract_status(self, address: str) -> Dict[str, Any]:
        cc = self.contract(address)
        return {
            "contract": cc.address,
            "name": cc.name,
            "standard": cc.standard,
            "startBlock": cc.start_block,
            "cursor": self.storage.get_cursor(cc.address).to_dict(),
            "eventCount": self.storage.count_events(cc.address),
            "positions": self.storage.position_summary(cc.address),
            "lastReconciliation": self.reconcilers[cc.address].last_summary(cc.address),
            "syncing": self.lock_for(cc.address).locked(),
        }

    # ---- background jobs ----

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self.tasks.append(task)
        task.add_done_callback(self._forget_task)
        return task

    def _forget_task(self, task: asyncio.Task) -> None:
        with contextlib.suppress(ValueError):
            self.tasks.remove(task)

    def prune_jobs(self, keep: int = MAX_FINISHED_JOBS) -> int:
        """Drop the oldest finished jobs beyond ``keep``; returns how many were dropped."""
        finished = [j for j in self.jobs.values() if j["status"] in JOB_FINAL]
        finished.sort(key=lambda j: (j.get("finishedAt") or j["createdAt"], j["createdAt"]))
        dropped = finished[: max(0, len(finished) - keep)]
        for job in dropped:
            self.jobs.pop(job["id"], None)
            self.job_cancel_events.pop(job["id"], None)
        return len(dropped)

    def start_job(self, kind: str, address: str, params: Dict[str, Any]) -> Dict[str, Any]:
        cc = self.contract(address)
        self.prune_jobs()
        job_id = uuid.uuid4().hex[:12]
        job = {
            "id": job_id,
            "kind": kind,
            "contract": cc.address,
            "status": "queued",
            "params": params,
            "createdAt": int(time.time()),
            "cancelRequested": False,
        }
        self.jobs[job_id] = job
        self.job_cancel_events[job_id] = asyncio.Event()
        self._track(asyncio.create_task(self.run_job(job_id)))
        return job

    async def run_job(self, job_id: str) -> None:
        job = self.jobs[job_id]
        cancel_event = self.job_cancel_events[job_id]
        try:
            if job.get("cancelRequested"):
                return
            job["status"] = "running"
            job["startedAt"] = int(time.time())
            params = job["params"]
            if job["kind"] == "sync":
                summary = await self.sync_contract(
                    job["contract"],
                    params.get("from_block"),
                    params.get("to_block"),
                    cancel_event=cancel_event,
                )
                job["result"] = summary.to_dict()
                if summary.error == "canceled":
                    job["status"] = "canceled"
                    job["error"] = "canceled by user"
                else:
                    job["status"] = "done" if summary.ok else "failed"
                    job["error"] = summary.error
            else:
                job["result"] = await self.validate_contract(
                    job["contract"],
                    fix=bool(params.get("fix")),
                    from_block=params.get("from_block"),
                    to_block=params.get("to_block"),
                    cancel_event=cancel_event,
                )
                job["status"] = "done"
        except FetchCancelled:
            logger.info("job %s canceled", job_id)
            job["status"] = "canceled"
            job["error"] = "canceled by user"
        except Exception as e:
            logger.exception("job %s failed", job_id)
            job["status"] = "failed"
            job["error"] = str(e)
        finally:
            job["finishedAt"] = int(time.time())
            self.job_cancel_events.pop(job_id, None)

    def cancel_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.jobs.get(job_id)
        if not job:
            return None
        if job["status"] in JOB_FINAL:
            return job
        job["cancelRequested"] = True
        job["cancelRequestedAt"] = int(time.time())
        event = self.job_cancel_events.get(job_id)
        if event is not None:
            event.set()
        if job["status"] == "queued":
            job["status"] = "canceled"
            job["error"] = "canceled by user"
        return job

    # ---- runtime ----

    async def sync_loop(self, cc: ContractConfig) -> None:
        while not self.stop_event.is_set():
            try:
                await self.sync_contract(cc.address, cancel_event=self.stop_event)
            except Exception:
                logger.exception("periodic sync of %s crashed", cc.address)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.cfg.sync_interval_sec)

    async def run(self, enable_api: bool = True) -> None:
        for cc in self.cfg.contracts:
            self._track(asyncio.create_task(self.sync_loop(cc)))

        runner: Optional[web.AppRunner] = None
        if enable_api:
            app = create_api_app(self)
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info("API listening on %s:%d", self.cfg.api_host, self.cfg.api_port)

        await self.stop_event.wait()

        if runner is not None:
            await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for ev in list(self.job_cancel_events.values()):
            ev.set()
        tasks = list(self.tasks)
        for t in tasks:
            t.cancel()
        for t in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks.clear()

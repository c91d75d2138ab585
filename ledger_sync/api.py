import logging
import time
from typing import Any, Dict, Optional

from aiohttp import web

from .config import ContractConfig
from .utils import normalize_address

logger = logging.getLogger(__name__)

MAX_PAGE = 1000


def _query_int(request: web.Request, name: str, default: Optional[int]) -> Optional[int]:
    raw = request.query.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    return int(raw)


class LedgerApi:
    """Read API over the event log and holder positions, plus sync/validate jobs."""

    def __init__(self, service):
        self.service = service
        self.cors_allow_origins = list(service.cfg.cors_allow_origins)

    def _contract_or_error(self, request: web.Request):
        raw = str(request.match_info.get("address", "")).strip()
        try:
            address = normalize_address(raw)
        except ValueError:
            return None, web.json_response({"error": f"invalid address: {raw}"}, status=400)
        cc: Optional[ContractConfig] = self.service.cfg.get_contract(address)
        if cc is None:
            return None, web.json_response({"error": "contract not configured"}, status=404)
        return cc, None

    def _page(self, request: web.Request):
        limit_n = _query_int(request, "limit", 100)
        offset_n = _query_int(request, "offset", 0)
        if limit_n <= 0 or offset_n < 0:
            raise ValueError("limit must be >= 1 and offset >= 0")
        return min(limit_n, MAX_PAGE), offset_n

    async def health_handler(self, request: web.Request) -> web.Response:
        contracts = []
        for cc in self.service.cfg.contracts:
            cursor = self.service.storage.get_cursor(cc.address)
            contracts.append(
                {
                    "contract": cc.address,
                    "name": cc.name,
                    "status": cursor.status,
                    "lastSyncedBlock": cursor.last_synced_block,
                }
            )
        active_jobs = sum(1 for j in self.service.jobs.values() if j["status"] in {"queued", "running"})
        return web.json_response(
            {
                "ok": True,
                "chainId": self.service.cfg.chain_id,
                "contracts": contracts,
                "activeJobs": active_jobs,
                "stats": self.service.stats,
                "now": int(time.time()),
            }
        )

    async def status_handler(self, request: web.Request) -> web.Response:
        cc, err = self._contract_or_error(request)
        if err is not None:
            return err
        return web.json_response(self.service.contract_status(cc.address))

    async def holders_handler(self, request: web.Request) -> web.Response:
        cc, err = self._contract_or_error(request)
        if err is not None:
            return err
        try:
            limit_n, offset_n = self._page(request)
            holder = request.query.get("holder")
            holder = normalize_address(holder) if holder else None
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        asset = request.query.get("asset") or None
        items = self.service.storage.query_positions(
            cc.address, holder=holder, asset_id=asset, limit_n=limit_n, offset_n=offset_n
        )
        return web.json_response(
            {
                "contract": cc.address,
                "count": len(items),
                "limit": limit_n,
                "offset": offset_n,
                "items": [p.to_dict() for p in items],
            }
        )

    async def events_handler(self, request: web.Request) -> web.Response:
        cc, err = self._contract_or_error(request)
        if err is not None:
            return err
        try:
            limit_n, offset_n = self._page(request)
            address = request.query.get("address")
            address = normalize_address(address) if address else None
            from_block = _query_int(request, "from", None)
            to_block = _query_int(request, "to", None)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        items = self.service.storage.query_events(
            cc.address,
            address=address,
            asset_id=request.query.get("asset") or None,
            from_block=from_block,
            to_block=to_block,
            limit_n=limit_n,
            offset_n=offset_n,
        )
        return web.json_response(
            {
                "contract": cc.address,
                "count": len(items),
                "limit": limit_n,
                "offset": offset_n,
                "items": items,
            }
        )

    async def _json_body(self, request: web.Request) -> Dict[str, Any]:
        if not request.can_read_body:
            return {}
        payload = await request.json()
        if not isinstance(payload, dict):
            raise ValueError("json body must be an object")
        return payload

    def _block_params(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        for src, dst in (("from_block", "from_block"), ("to_block", "to_block")):
            if payload.get(src) is not None:
                value = int(payload[src])
                if value < 0:
                    raise ValueError(f"{src} must be >= 0")
                params[dst] = value
        if "from_block" in params and "to_block" in params and params["to_block"] < params["from_block"]:
            raise ValueError("invalid block range")
        return params

    async def sync_handler(self, request: web.Request) -> web.Response:
        cc, err = self._contract_or_error(request)
        if err is not None:
            return err
        try:
            params = self._block_params(await self._json_body(request))
        except (TypeError, ValueError) as e:
            return web.json_response({"error": str(e)}, status=400)
        job = self.service.start_job("sync", cc.address, params)
        return web.json_response({"ok": True, "jobId": job["id"]}, status=202)

    async def validate_handler(self, request: web.Request) -> web.Response:
        cc, err = self._contract_or_error(request)
        if err is not None:
            return err
        try:
            payload = await self._json_body(request)
            params = self._block_params(payload)
        except (TypeError, ValueError) as e:
            return web.json_response({"error": str(e)}, status=400)
        params["fix"] = bool(payload.get("fix", False))
        job = self.service.start_job("validate", cc.address, params)
        return web.json_response({"ok": True, "jobId": job["id"]}, status=202)

    async def job_detail_handler(self, request: web.Request) -> web.Response:
        job_id = str(request.match_info.get("job_id", "")).strip()
        job = self.service.jobs.get(job_id)
        if not job:
            return web.json_response({"error": "job not found"}, status=404)
        return web.json_response(job)

    async def job_cancel_handler(self, request: web.Request) -> web.Response:
        job_id = str(request.match_info.get("job_id", "")).strip()
        job = self.service.cancel_job(job_id)
        if not job:
            return web.json_response({"error": "job not found"}, status=404)
        return web.json_response({"ok": True, "job": job})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    def create_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/contracts/{address}/status", self.status_handler)
        app.router.add_get("/contracts/{address}/holders", self.holders_handler)
        app.router.add_get("/contracts/{address}/events", self.events_handler)
        app.router.add_post("/contracts/{address}/sync", self.sync_handler)
        app.router.add_post("/contracts/{address}/validate", self.validate_handler)
        app.router.add_get("/jobs/{job_id}", self.job_detail_handler)
        app.router.add_post("/jobs/{job_id}/cancel", self.job_cancel_handler)
        return app


def create_api_app(service) -> web.Application:
    return LedgerApi(service).create_app()

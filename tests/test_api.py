import asyncio
import contextlib

import pytest
from aiohttp import test_utils

from conftest import CONTRACT, HOLDER_A, HOLDER_B, DummyRPC, make_config, scenario_logs
from ledger_sync.api import create_api_app
from ledger_sync.service import LedgerSyncService


@contextlib.asynccontextmanager
async def api_client(cfg, rpc, storage):
    service = LedgerSyncService(cfg, rpc=rpc, storage=storage)
    client = test_utils.TestClient(test_utils.TestServer(create_api_app(service)))
    await client.start_server()
    try:
        yield client, service
    finally:
        await service.shutdown()
        await client.close()


async def wait_for_job(client, job_id, attempts=200):
    for _ in range(attempts):
        resp = await client.get(f"/jobs/{job_id}")
        assert resp.status == 200
        job = await resp.json()
        if job["status"] in {"done", "failed", "canceled"}:
            return job
        await asyncio.sleep(0.01)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.mark.asyncio
async def test_health_lists_contracts(cfg, rpc, storage):
    async with api_client(cfg, rpc, storage) as (client, _):
        resp = await client.get("/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["ok"] is True
        assert body["contracts"][0]["contract"] == CONTRACT
        assert body["contracts"][0]["status"] == "idle"
        assert body["activeJobs"] == 0


@pytest.mark.asyncio
async def test_sync_job_then_read_holders_and_events(cfg, rpc, storage):
    async with api_client(cfg, rpc, storage) as (client, _):
        resp = await client.post(f"/contracts/{CONTRACT}/sync")
        assert resp.status == 202
        job = await wait_for_job(client, (await resp.json())["jobId"])
        assert job["status"] == "done"
        assert job["result"]["eventsInserted"] == 3
        assert job["result"]["lastSyncedBlock"] == 400

        resp = await client.get(f"/contracts/{CONTRACT}/holders")
        body = await resp.json()
        assert {(p["holder"], p["balance"]) for p in body["items"]} == {(HOLDER_A, "6"), (HOLDER_B, "2")}

        resp = await client.get(f"/contracts/{CONTRACT}/holders", params={"holder": HOLDER_B})
        assert [p["balance"] for p in (await resp.json())["items"]] == ["2"]

        resp = await client.get(f"/contracts/{CONTRACT}/events", params={"limit": "2"})
        body = await resp.json()
        assert [e["block_number"] for e in body["items"]] == [260, 150]

        resp = await client.get(f"/contracts/{CONTRACT}/events", params={"limit": "2", "offset": "2"})
        assert [e["block_number"] for e in (await resp.json())["items"]] == [120]

        resp = await client.get(f"/contracts/{CONTRACT}/status")
        status = await resp.json()
        assert status["cursor"]["last_synced_block"] == 400
        assert status["eventCount"] == 3
        assert status["positions"]["totalSupply"] == "8"


@pytest.mark.asyncio
async def test_validate_job_with_fix(cfg, rpc, storage):
    async with api_client(cfg, rpc, storage) as (client, service):
        await service.sync_contract(CONTRACT)
        storage.conn.execute("DELETE FROM transfer_events WHERE block_number = 150")
        storage.conn.commit()

        resp = await client.post(f"/contracts/{CONTRACT}/validate", json={"fix": True})
        assert resp.status == 202
        job = await wait_for_job(client, (await resp.json())["jobId"])
        assert job["status"] == "done"
        assert job["result"]["eventsAdded"] == 1
        assert job["result"]["cleared"] is True
        assert job["result"]["report"]["ok"] is True

        resp = await client.get(f"/contracts/{CONTRACT}/status")
        assert (await resp.json())["lastReconciliation"]["healthScore"] == 100


@pytest.mark.asyncio
async def test_request_errors(cfg, rpc, storage):
    async with api_client(cfg, rpc, storage) as (client, _):
        resp = await client.get("/contracts/0xnothex/holders")
        assert resp.status == 400
        resp = await client.get("/contracts/0x" + "1" * 40 + "/holders")
        assert resp.status == 404
        resp = await client.get(f"/contracts/{CONTRACT}/events", params={"limit": "0"})
        assert resp.status == 400
        resp = await client.get(f"/contracts/{CONTRACT}/events", params={"from": "abc"})
        assert resp.status == 400
        resp = await client.post(f"/contracts/{CONTRACT}/sync", json={"from_block": 300, "to_block": 200})
        assert resp.status == 400
        resp = await client.get("/jobs/missing")
        assert resp.status == 404
        resp = await client.post("/jobs/missing/cancel")
        assert resp.status == 404


class GatedRPC(DummyRPC):
    """Holds the first logs request after arming until ``gate`` is opened."""

    def __init__(self, logs, armed=True):
        super().__init__(logs)
        self.armed = armed
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        if self.armed and not self.entered.is_set():
            self.entered.set()
            await self.gate.wait()
        return await super().get_logs(from_block, to_block, address, topics)


@pytest.mark.asyncio
async def test_cancel_running_sync_job(cfg, storage):
    rpc = GatedRPC(scenario_logs())
    async with api_client(cfg, rpc, storage) as (client, _):
        resp = await client.post(f"/contracts/{CONTRACT}/sync")
        job_id = (await resp.json())["jobId"]
        await asyncio.wait_for(rpc.entered.wait(), timeout=5)

        resp = await client.post(f"/jobs/{job_id}/cancel")
        assert resp.status == 200
        assert (await resp.json())["job"]["cancelRequested"] is True

        rpc.gate.set()
        job = await wait_for_job(client, job_id)
        assert job["status"] == "canceled"
        assert storage.count_events(CONTRACT) == 0
        assert storage.get_cursor(CONTRACT).last_synced_block is None


@pytest.mark.asyncio
async def test_cors_headers_for_allowed_origin(tmp_path, rpc, storage):
    cfg = make_config(tmp_path, CORS_ALLOW_ORIGINS=["https://dash.example"])
    async with api_client(cfg, rpc, storage) as (client, _):
        resp = await client.get("/health", headers={"Origin": "https://dash.example"})
        assert resp.headers["Access-Control-Allow-Origin"] == "https://dash.example"
        resp = await client.get("/health", headers={"Origin": "https://other.example"})
        assert "Access-Control-Allow-Origin" not in resp.headers


@pytest.mark.asyncio
async def test_cancel_running_validate_job(cfg, storage):
    rpc = GatedRPC(scenario_logs(), armed=False)
    async with api_client(cfg, rpc, storage) as (client, service):
        await service.sync_contract(CONTRACT)
        rpc.armed = True

        resp = await client.post(f"/contracts/{CONTRACT}/validate", json={"fix": True})
        job_id = (await resp.json())["jobId"]
        await asyncio.wait_for(rpc.entered.wait(), timeout=5)

        resp = await client.post(f"/jobs/{job_id}/cancel")
        assert (await resp.json())["job"]["cancelRequested"] is True

        rpc.gate.set()
        job = await wait_for_job(client, job_id)
        assert job["status"] == "canceled"
        assert "result" not in job
        assert service.reconcilers[CONTRACT].last_summary(CONTRACT) is None


@pytest.mark.asyncio
async def test_finished_jobs_and_tasks_are_released(cfg, rpc, storage):
    service = LedgerSyncService(cfg, rpc=rpc, storage=storage)
    for _ in range(3):
        service.start_job("sync", CONTRACT, {})
        await asyncio.gather(*list(service.tasks))
        await asyncio.sleep(0)
    assert service.tasks == []
    assert service.job_cancel_events == {}
    assert all(j["status"] == "done" for j in service.jobs.values())

    assert service.prune_jobs(keep=1) == 2
    assert len(service.jobs) == 1

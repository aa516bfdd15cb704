from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Response

from adminflow.api.schemas import (
    EngineConfigRequest,
    Envelope,
    RestoreRequest,
    ServerCreateRequest,
    ServerUpdateRequest,
    SyncRequest,
)
from adminflow.logging import get_logger
from adminflow.service.runtime import get_runtime
from adminflow.storage.models import EngineConfig

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

_NAME_PATTERN = r"^[A-Za-z0-9_.-]{1,255}$"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _switch_payload(result) -> dict:
    return {
        "config": result.config.to_external(),
        "before": result.before.as_dict(),
        "after": result.after.as_dict(),
        "created": list(result.created),
        "steps": list(result.steps),
    }


# -- engine configuration --------------------------------------------------


@router.get("/system/database", response_model=Envelope, tags=["database"])
async def get_database_config():
    runtime = get_runtime()
    cfg = runtime.config_store.current()
    data = cfg.to_external()
    data["configured"] = runtime.config_store.is_configured()
    return Envelope(status="ok", data=data)


@router.post("/system/database", response_model=Envelope, tags=["database"])
async def save_database_config(body: EngineConfigRequest):
    runtime = get_runtime()
    current = runtime.config_store.current()
    cfg = runtime.resolve_config(body.to_config(current))
    saved = await asyncio.to_thread(
        runtime.config_store.update,
        engine=cfg.engine,
        mongo_uri=cfg.mongo_uri,
        mongo_db=cfg.mongo_db,
        sqlite_path=cfg.sqlite_path,
    )
    return Envelope(status="ok", data=saved.to_external())


@router.post("/system/database/verify", response_model=Envelope, tags=["database"])
async def verify_database(body: EngineConfigRequest):
    runtime = get_runtime()
    cfg = runtime.resolve_config(body.to_config(runtime.config_store.current()))
    result = await asyncio.to_thread(runtime.verifier.verify, cfg)
    return Envelope(status="ok", data=result.as_dict())


@router.get("/system/database/overview", response_model=Envelope, tags=["database"])
async def database_overview():
    runtime = get_runtime()
    data = await asyncio.to_thread(runtime.overview)
    return Envelope(status="ok", data=data)


@router.post("/db/select", response_model=Envelope, tags=["database"])
async def select_engine(body: EngineConfigRequest):
    runtime = get_runtime()
    target = runtime.resolve_config(body.to_config(runtime.config_store.current()))
    result = await asyncio.to_thread(runtime.switcher.switch_to, target)
    return Envelope(status="ok", data=_switch_payload(result))


# -- migration, sync and jobs ----------------------------------------------


@router.post("/db/migrate-to-mongo", response_model=Envelope, status_code=202, tags=["jobs"])
async def migrate_to_mongo():
    runtime = get_runtime()
    job = await asyncio.to_thread(runtime.start_migration)
    return Envelope(status="ok", data=job.as_dict())


@router.post("/db/sync", response_model=Envelope, status_code=202, tags=["jobs"])
async def sync_replicas(body: Optional[SyncRequest] = None):
    runtime = get_runtime()
    targets = body.targets if body else None
    job = await asyncio.to_thread(runtime.start_sync, targets)
    return Envelope(status="ok", data=job.as_dict())


@router.get("/db/compare", response_model=Envelope, tags=["database"])
async def compare_engines():
    runtime = get_runtime()
    rows = await asyncio.to_thread(runtime.compare)
    return Envelope(status="ok", data={"tables": rows, "inSync": all(r["inSync"] for r in rows)})


@router.get("/db/jobs", response_model=Envelope, tags=["jobs"])
async def list_jobs(kind: Optional[str] = None):
    runtime = get_runtime()
    return Envelope(status="ok", data={"items": [job.as_dict() for job in runtime.jobs.list(kind)]})


@router.get("/db/jobs/{job_id}", response_model=Envelope, tags=["jobs"])
async def get_job(job_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.jobs.get(job_id).as_dict())


@router.post("/db/jobs/{job_id}/cancel", response_model=Envelope, tags=["jobs"])
async def cancel_job(job_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.jobs.cancel(job_id).as_dict())


# -- server registry -------------------------------------------------------


@router.get("/mongo-servers", response_model=Envelope, tags=["servers"])
async def list_servers():
    runtime = get_runtime()
    servers = await asyncio.to_thread(runtime.servers_overview)
    current = runtime.servers.current()
    return Envelope(
        status="ok",
        data={
            "currentServer": current.id if current else None,
            "servers": [server.public_dict() for server in servers],
        },
    )


@router.post("/mongo-servers", response_model=Envelope, status_code=201, tags=["servers"])
async def create_server(body: ServerCreateRequest):
    runtime = get_runtime()
    server = await asyncio.to_thread(runtime.servers.add, body.model_dump(exclude_none=True))
    return Envelope(status="ok", data=server.public_dict())


@router.put("/mongo-servers/{server_id}", response_model=Envelope, tags=["servers"])
async def update_server(body: ServerUpdateRequest, server_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    server = await asyncio.to_thread(
        runtime.servers.update, server_id, body.model_dump(exclude_none=True)
    )
    return Envelope(status="ok", data=server.public_dict())


@router.delete("/mongo-servers/{server_id}", response_model=Envelope, tags=["servers"])
async def delete_server(server_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.servers.remove, server_id)
    return Envelope(status="ok", data={"id": server_id, "deleted": True})


@router.post("/mongo-servers/{server_id}/current", response_model=Envelope, tags=["servers"])
async def set_current_server(server_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    server = await asyncio.to_thread(runtime.servers.set_current, server_id)
    return Envelope(status="ok", data={"currentServer": server.id})


@router.post("/mongo-servers/{server_id}/test", response_model=Envelope, tags=["servers"])
async def test_server(server_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    server = runtime.servers.get(server_id)
    cfg = EngineConfig(engine="mongodb", mongo_uri=server.uri, mongo_db=server.database)
    result = await asyncio.to_thread(runtime.verifier.verify, cfg)
    data = result.as_dict()
    data["server"] = server.id
    return Envelope(status="ok", data=data)


# -- backups ---------------------------------------------------------------


@router.get("/system/backups", response_model=Envelope, tags=["backups"])
async def list_backups():
    runtime = get_runtime()
    artifacts = await asyncio.to_thread(runtime.backups.list_backups)
    return Envelope(status="ok", data={"items": [a.as_dict() for a in artifacts]})


@router.post("/system/backups", response_model=Envelope, status_code=201, tags=["backups"])
async def create_backup():
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.backups.create_backup)
    return Envelope(status="ok", data=result)


@router.post("/system/backups/restore", response_model=Envelope, tags=["backups"])
async def restore_backup(body: RestoreRequest):
    runtime = get_runtime()
    result = await asyncio.to_thread(runtime.backups.restore_backup, body.name, confirm=body.confirm)
    return Envelope(status="ok", data=result)


@router.get("/system/backups/{name}/download", tags=["backups"])
async def download_backup(name: str = Path(..., pattern=_NAME_PATTERN)):
    runtime = get_runtime()
    payload = await asyncio.to_thread(runtime.backups.archive, name)
    return Response(
        content=payload,
        media_type="application/gzip",
        headers={"Content-Disposition": f'attachment; filename="{name}.tar.gz"'},
    )


# -- installation ----------------------------------------------------------


@router.get("/install/status", response_model=Envelope, tags=["install"])
async def install_status():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.installation.status())


@router.get("/install/validate", response_model=Envelope, tags=["install"])
async def install_validate():
    runtime = get_runtime()
    report = await asyncio.to_thread(runtime.installation.validate)
    return Envelope(status="ok", data=report)


@router.post("/install/test-db", response_model=Envelope, tags=["install"])
async def install_test_db(body: EngineConfigRequest):
    runtime = get_runtime()
    if runtime.installation.is_installed():
        raise _http_error("conflict", "system is already installed", status_code=409)
    result = await asyncio.to_thread(runtime.verifier.verify, runtime.resolve_config(body.to_config()))
    return Envelope(status="ok", data=result.as_dict())


@router.post("/install/complete", response_model=Envelope, status_code=201, tags=["install"])
async def install_complete(body: EngineConfigRequest):
    runtime = get_runtime()
    cfg = runtime.resolve_config(body.to_config())
    record = await asyncio.to_thread(runtime.installation.complete_install, cfg)
    return Envelope(
        status="ok",
        data={"installed": True, "record": record.to_external(), "config": runtime.config_store.current().to_external()},
    )

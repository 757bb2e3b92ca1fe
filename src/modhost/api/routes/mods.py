"""/mods and /patches routes: query API + operational entry points.

All logic lives in ModHost; handlers only translate results and errors
into JSON.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from modcore.exceptions import ModError, OperationCancelled
from modcore.host import ModHost

router = APIRouter()


class LoadRequest(BaseModel):  # noqa: D401
    path: str | None = None


def _host(request: Request) -> ModHost:
    return request.app.state.host


@router.get("/mods")
def list_mods(request: Request, state: str | None = None):  # noqa: D401
    host = _host(request)
    records = host.loader.records()
    if state:
        records = [r for r in records if r.state.value == state]
    return {"mods": [r.to_dict() for r in records]}


@router.get("/mods/load-order")
def load_order(request: Request):  # noqa: D401
    return {"order": list(_host(request).get_load_order())}


@router.get("/mods/metrics")
def load_metrics(request: Request):  # noqa: D401
    host = _host(request)
    err = host.last_error
    return {
        "metrics": host.get_load_metrics().to_dict(),
        "last_error": err.to_dict() if err else None,
    }


@router.get("/mods/validation")
def validation(request: Request):  # noqa: D401
    return _host(request).validation_report().to_dict()


@router.get("/mods/{mod_id}/api")
def mod_api(mod_id: str, request: Request):  # noqa: D401
    host = _host(request)
    if host.get_record(mod_id) is None:
        raise HTTPException(status_code=404, detail=f"unknown mod {mod_id}")
    api = host.get_api(mod_id)
    return {
        "id": mod_id,
        "published": api is not None,
        "type": type(api).__name__ if api is not None else None,
    }


@router.get("/patches")
def patches(request: Request):  # noqa: D401
    coord = _host(request).coordinator
    return {
        "targets": {
            t: [r.to_dict() for r in coord.patches_for(t)]
            for t in coord.targets()
        },
        "conflicts": coord.detect_conflicts(),
    }


@router.post("/mods/load")
def load_all(
    request: Request, payload: LoadRequest | None = None
):  # noqa: D401
    host = _host(request)
    try:
        metrics = host.load_all(payload.path if payload else None)
    except ModError as e:
        raise HTTPException(status_code=409, detail=e.to_dict()) from e
    return {"metrics": metrics.to_dict(), "order": list(host.get_load_order())}


@router.post("/mods/unload")
def unload_all(request: Request):  # noqa: D401
    return {"unloaded": _host(request).unload_all()}


@router.post("/mods/{mod_id}/reload")
def reload_mod(mod_id: str, request: Request):  # noqa: D401
    try:
        rec = _host(request).reload_mod(mod_id)
    except KeyError as e:
        raise HTTPException(
            status_code=404, detail=f"unknown mod {mod_id}"
        ) from e
    except OperationCancelled as e:
        raise HTTPException(status_code=409, detail=e.to_dict()) from e
    return rec.to_dict()


@router.post("/mods/{mod_id}/unload")
def unload_mod(mod_id: str, request: Request):  # noqa: D401
    try:
        changed = _host(request).unload_mod(mod_id)
    except KeyError as e:
        raise HTTPException(
            status_code=404, detail=f"unknown mod {mod_id}"
        ) from e
    return {"id": mod_id, "unloaded": changed}

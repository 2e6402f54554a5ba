"""FastAPI application exposing sshsentry to long-lived callers."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable, TypeVar

from fastapi import Depends, FastAPI, HTTPException

from . import __version__
from .address import Address, parse_address
from .engine import Action, Sentry
from .errors import LockUnavailable, StoreIOError, ValidationError
from .models import DecisionEnvelope, HealthEnvelope, RecordEnvelope, ReportEnvelope

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = FastAPI(title="sshsentry", version=__version__)

_EVENT_ACTIONS = {Action.CONNECT, Action.WHITELIST, Action.BLACKLIST, Action.DELIST}


@lru_cache()
def get_sentry() -> Sentry:
    return Sentry.from_settings()


def valid_address(address: str) -> Address:
    """Reject malformed addresses before the store is opened."""

    try:
        return parse_address(address)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _guarded(call: Callable[[], T]) -> T:
    try:
        return call()
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except LockUnavailable as exc:
        logger.warning("Store busy: %s", exc)
        raise HTTPException(status_code=503, detail="reputation store is busy") from exc
    except StoreIOError as exc:
        logger.error("Store failure: %s", exc)
        raise HTTPException(status_code=500, detail="reputation store unavailable") from exc


@app.get("/healthz", response_model=HealthEnvelope)
def healthz(sentry: Sentry = Depends(get_sentry)) -> HealthEnvelope:
    return HealthEnvelope(store=str(sentry.engine.store.path))


@app.post("/api/addresses/{address}/{action}", response_model=DecisionEnvelope)
def api_event(
    action: str,
    address: Address = Depends(valid_address),
    sentry: Sentry = Depends(get_sentry),
) -> DecisionEnvelope:
    try:
        verb = Action(action)
    except ValueError:
        verb = None
    if verb not in _EVENT_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unsupported action '{action}'")

    decision = _guarded(lambda: sentry.dispatch(address.text, verb.value))
    return DecisionEnvelope(**decision.as_dict())


@app.get("/api/addresses/{address}", response_model=RecordEnvelope)
def api_address(
    address: Address = Depends(valid_address),
    sentry: Sentry = Depends(get_sentry),
) -> RecordEnvelope:
    summary = _guarded(lambda: sentry.dispatch(address.text, Action.REPORT.value))
    payload = summary.as_dict()
    return RecordEnvelope(
        address=payload["address"],
        status=payload["status"],
        record=payload["record"],
        classifications=payload["classifications"],
        outcomes=payload["outcomes"],
    )


@app.get("/api/report", response_model=ReportEnvelope)
def api_report(dump: bool = False, sentry: Sentry = Depends(get_sentry)) -> ReportEnvelope:
    summary = _guarded(lambda: sentry.dispatch(None, Action.REPORT.value, dump=dump))
    return ReportEnvelope(**summary.as_dict())


__all__ = ["app", "get_sentry", "valid_address"]

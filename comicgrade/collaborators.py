from __future__ import annotations

"""
Contracts for the services the grading pipeline depends on, plus the
HTTP implementation used in production.

Every call the orchestrator makes goes through :func:`best_effort`, so a
network error, a timeout and a non-2xx answer all come back as the same
thing: a CallResult carrying the caller's documented fallback value.
"""

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from .config import (
    CALL_TIMEOUT_SECONDS,
    GRADING_SERVICES_TOKEN,
    GRADING_SERVICES_URL,
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
)
from .pipeline_types import GradableItem
from .voices import Voice


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class RecallStore(Protocol):
    async def recall(self, title: str, issue: str) -> Optional[Dict[str, Any]]: ...

    async def store(self, item: GradableItem, decision: Dict[str, Any]) -> bool: ...


class GradingServices(Protocol):
    async def upload(self, image_bytes: bytes, item_id: str, side: str) -> Optional[str]: ...

    async def run_ensemble(self, images: Dict[str, bytes], item_context: Dict[str, Any]) -> List[Any]: ...

    async def consult(self, voice: Voice, item_context: Dict[str, Any]) -> Any: ...

    async def research(self, item_context: Dict[str, Any], current_grade: float) -> str: ...

    async def query_engine(self, engine_id: str, prompt: str) -> str: ...

    async def debate(
        self,
        item_context: Dict[str, Any],
        current_grade: float,
        defects: List[str],
        research_text: str,
    ) -> Dict[str, Any]: ...

    async def decide(
        self,
        item_context: Dict[str, Any],
        ensemble_grade: float,
        debate_grade: float,
        defects: List[str],
        research_text: str,
        valuation: Optional[int],
    ) -> Dict[str, Any]: ...

    async def comment(
        self,
        item_context: Dict[str, Any],
        grade: float,
        value: int,
        defects: List[str],
    ) -> Dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Best-effort call wrapper
# ---------------------------------------------------------------------------


@dataclass
class CallResult:
    """Outcome of one collaborator call: the payload, or the fallback."""

    ok: bool
    value: Any
    error: Optional[str] = None


async def best_effort(
    call: Awaitable[Any],
    fallback: Any,
    label: str,
    timeout: float = CALL_TIMEOUT_SECONDS,
) -> CallResult:
    """
    Await ``call`` with a timeout; on any failure return ``fallback``.

    Cancellation is not intercepted (CancelledError is not an Exception).
    """
    try:
        value = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("{} timed out after {:.1f}s; using fallback", label, timeout)
        return CallResult(ok=False, value=fallback, error="timeout")
    except Exception as e:
        logger.warning("{} failed; using fallback: {}", label, e)
        return CallResult(ok=False, value=fallback, error=str(e) or e.__class__.__name__)
    return CallResult(ok=True, value=value)


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class RemoteServices:
    """
    httpx-backed client for the grading services gateway.

    Implements both RecallStore and GradingServices. Non-2xx answers raise
    RuntimeError; the orchestrator turns those into fallbacks.
    """

    def __init__(
        self,
        base_url: str = GRADING_SERVICES_URL,
        token: str = GRADING_SERVICES_TOKEN,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("RemoteServices needs a base URL (set GRADING_SERVICES_URL)")
        headers = {"User-Agent": HTTP_USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
            transport=transport,
        )

    async def __aenter__(self) -> "RemoteServices":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        r = await self._client.post(path, json=payload)
        if r.status_code >= 400:
            raise RuntimeError(f"HTTP {r.status_code} for {path}")
        if "json" in r.headers.get("content-type", ""):
            return r.json()
        return r.text

    # -- recall / store ----------------------------------------------------

    async def recall(self, title: str, issue: str) -> Optional[Dict[str, Any]]:
        data = await self._post("/recall", {"title": title, "issue": issue})
        if not isinstance(data, dict) or data.get("grade") is None:
            return None
        return data

    async def store(self, item: GradableItem, decision: Dict[str, Any]) -> bool:
        payload = {"item_id": item.item_id, "item": item.context(), "decision": decision}
        data = await self._post("/store", payload)
        return bool(data.get("ok", True)) if isinstance(data, dict) else True

    # -- grading services --------------------------------------------------

    async def upload(self, image_bytes: bytes, item_id: str, side: str) -> Optional[str]:
        data = await self._post("/upload", {"item_id": item_id, "side": side, "image": _b64(image_bytes)})
        if isinstance(data, dict):
            return data.get("key") or data.get("storage_key")
        return str(data) or None

    async def run_ensemble(self, images: Dict[str, bytes], item_context: Dict[str, Any]) -> List[Any]:
        payload = {"images": {side: _b64(b) for side, b in images.items()}, "item": item_context}
        data = await self._post("/vision/ensemble", payload)
        if isinstance(data, dict):
            data = data.get("results", [])
        return list(data or [])

    async def consult(self, voice: Voice, item_context: Dict[str, Any]) -> Any:
        profile = voice.profile
        payload = {"item": item_context, "model": profile.model, "persona": profile.persona}
        return await self._post(f"/advisors/{voice.value.lower()}", payload)

    async def research(self, item_context: Dict[str, Any], current_grade: float) -> str:
        data = await self._post("/research", {"item": item_context, "grade": current_grade})
        if isinstance(data, dict):
            return str(data.get("text") or data.get("research") or "")
        return str(data or "")

    async def query_engine(self, engine_id: str, prompt: str) -> str:
        data = await self._post(f"/engines/{engine_id}", {"prompt": prompt})
        if isinstance(data, dict):
            return str(data.get("result") or data.get("analysis") or "")
        return str(data or "")

    async def debate(
        self,
        item_context: Dict[str, Any],
        current_grade: float,
        defects: List[str],
        research_text: str,
    ) -> Dict[str, Any]:
        payload = {"item": item_context, "grade": current_grade, "defects": defects, "research": research_text}
        data = await self._post("/debate", payload)
        return data if isinstance(data, dict) else {}

    async def decide(
        self,
        item_context: Dict[str, Any],
        ensemble_grade: float,
        debate_grade: float,
        defects: List[str],
        research_text: str,
        valuation: Optional[int],
    ) -> Dict[str, Any]:
        payload = {
            "item": item_context,
            "ensemble_grade": ensemble_grade,
            "debate_grade": debate_grade,
            "defects": defects,
            "research": research_text,
            "valuation": valuation,
        }
        data = await self._post("/council", payload)
        return data if isinstance(data, dict) else {}

    async def comment(
        self,
        item_context: Dict[str, Any],
        grade: float,
        value: int,
        defects: List[str],
    ) -> Dict[str, Any]:
        data = await self._post(
            "/commentary",
            {"item": item_context, "grade": grade, "value": value, "defects": defects},
        )
        return data if isinstance(data, dict) else {"text": str(data or "")}

"""HTTP clients for the pricing analysis and pricing-page transformation services."""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from .errors import CollaboratorError


logger = logging.getLogger("uvicorn.error")

YAML_CONTENT_TYPES = ("application/x-yaml", "application/yaml", "text/yaml", "text/plain")


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        for key in ("message", "detail", "error"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return json.dumps(data, ensure_ascii=True)


class _ServiceClient:
    service = "service"

    def __init__(self, base_url: str, timeout_s: float):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
            headers={"Accept": "application/json"},
        )

    async def _request(self, method: str, path: str, action: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.TimeoutException as exc:
            logger.warning("%s: %s timed out", self.service, action)
            raise CollaboratorError(self.service, f"Failed to {action}: request timed out") from exc
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            logger.warning("%s: %s failed (%s): %s", self.service, action, exc.response.status_code, detail)
            raise CollaboratorError(
                self.service, f"Failed to {action}: {detail}", status=exc.response.status_code
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("%s: %s request error: %s", self.service, action, exc)
            raise CollaboratorError(self.service, f"Failed to {action}: {exc}") from exc

    @staticmethod
    def _json(resp: httpx.Response, action: str, service: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise CollaboratorError(service, f"Failed to {action}: response was not JSON") from exc
        if not isinstance(data, dict):
            raise CollaboratorError(service, f"Failed to {action}: unexpected response shape")
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class AnalysisClient(_ServiceClient):
    service = "analysis"

    async def get_summary(self, file_name: str, content: bytes) -> Dict[str, Any]:
        resp = await self._request(
            "POST",
            "/api/v1/pricing/summary",
            "get pricing summary",
            files={"pricingFile": (file_name, content, "application/x-yaml")},
        )
        return self._json(resp, "get pricing summary", self.service)

    async def start_analysis_job(
        self,
        file_name: str,
        content: bytes,
        operation: str,
        solver: str,
        *,
        filters: Optional[Dict[str, Any]] = None,
        objective: Optional[str] = None,
        job_specific_payload: Optional[str] = None,
    ) -> Dict[str, Any]:
        form: Dict[str, str] = {"operation": operation, "solver": solver}
        if filters:
            form["filters"] = json.dumps(filters)
        if objective:
            form["objective"] = objective
        if job_specific_payload:
            form["jobSpecificPayload"] = job_specific_payload
        resp = await self._request(
            "POST",
            "/api/v1/pricing/analysis",
            "start analysis job",
            data=form,
            files={"pricingFile": (file_name, content, "application/x-yaml")},
        )
        return self._json(resp, "start analysis job", self.service)

    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/api/v1/pricing/analysis/{job_id}", "get job status")
        return self._json(resp, "get job status", self.service)

    async def health_check(self) -> bool:
        try:
            resp = await self.client.get("/api/v1/health")
            resp.raise_for_status()
            return resp.json().get("status") == "UP"
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Analysis API health check failed: %s", exc)
            return False


class TransformationClient(_ServiceClient):
    service = "transformation"

    async def start_transformation(
        self, url: str, model: Optional[str] = None, max_tries: Optional[int] = None
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"url": url}
        if model:
            payload["model"] = model
        if max_tries:
            payload["max_tries"] = max_tries
        resp = await self._request("POST", "/api/v1/transform", "start transformation", json=payload)
        return self._json(resp, "start transformation", self.service)

    async def get_status(self, task_id: str) -> Dict[str, Any]:
        """Returns ``{"status", "yaml_content", "error"}``.

        The service answers JSON while a task is pending or failed and the
        YAML document itself once it has completed.
        """
        try:
            resp = await self._request(
                "GET", f"/api/v1/transform/status/{task_id}", "get transformation status"
            )
        except CollaboratorError as exc:
            if exc.status == 404:
                raise CollaboratorError(self.service, "Task not found", status=404) from exc
            raise
        content_type = resp.headers.get("content-type", "")
        if "application/json" in content_type:
            data = self._json(resp, "get transformation status", self.service)
            return {"status": str(data.get("status") or "PENDING"), "yaml_content": None, "error": data.get("error")}
        if any(kind in content_type for kind in YAML_CONTENT_TYPES):
            return {"status": "COMPLETED", "yaml_content": resp.text, "error": None}
        raise CollaboratorError(self.service, f"Unexpected content type: {content_type or 'none'}")

    async def health_check(self) -> bool:
        try:
            resp = await self.client.get("/health")
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Transformation API health check failed: %s", exc)
            return False

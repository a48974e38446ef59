"""Tool catalogue offered to the model and the dispatcher that runs the calls.

Tools are declared in the OpenAI function-calling format. Every call comes
back as a ``ToolCallResult``; handler errors become failure outcomes so the
model can explain them to the user instead of the turn blowing up.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from .errors import CollaboratorError, FatalError, HarveyError, ValidationError
from .file_store import TRANSFORMATION_PREFIX, FileStore, validate_pricing_yaml
from .pricing_api import AnalysisClient, TransformationClient
from .schemas import FileRef, ToolCallRequest, ToolCallResult
from .session_store import Session, SessionStore


logger = logging.getLogger("uvicorn.error")

VALID_OPERATIONS = ("validate", "optimal", "subscriptions", "filter")
VALID_OBJECTIVES = ("minimize", "maximize")
YAML_PREVIEW_CHARS = 200


TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "getPricingSummary",
            "description": "Send a pricing YAML file to the analysis service and return a summary of its key "
            "metrics (number of features, plans, add-ons, usage limits, price ranges). Use for quick overviews.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pricingFileId": {
                        "type": "string",
                        "description": "ID of an uploaded or transformed pricing YAML file.",
                    }
                },
                "required": ["pricingFileId"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "startPricingAnalysisJob",
            "description": "Start an asynchronous analysis job on a pricing YAML file (validate, optimal, "
            "subscriptions, filter). Returns a job ID whose status can be checked later.",
            "parameters": {
                "type": "object",
                "properties": {
                    "pricingFileId": {
                        "type": "string",
                        "description": "ID of an uploaded or transformed pricing YAML file.",
                    },
                    "operation": {
                        "type": "string",
                        "enum": list(VALID_OPERATIONS),
                        "description": "The analysis to run.",
                    },
                    "solver": {
                        "type": "string",
                        "description": 'Solver to use, e.g. "minizinc" or "choco".',
                    },
                    "filters": {
                        "type": "object",
                        "description": "Filter criteria for filter and optimal operations.",
                        "properties": {
                            "minPrice": {"type": "number", "description": "Minimum plan price."},
                            "maxPrice": {"type": "number", "description": "Maximum plan price."},
                            "features": {
                                "type": "array",
                                "items": {"type": "string"},
                                "description": "Feature keys a configuration must include.",
                            },
                            "usageLimits": {
                                "type": "array",
                                "items": {"type": "object"},
                                "description": 'One object per limit with its minimum value, e.g. [{"apiCalls": 10000}].',
                            },
                        },
                    },
                    "objective": {
                        "type": "string",
                        "enum": list(VALID_OBJECTIVES),
                        "description": "Optimisation objective for optimal operations.",
                    },
                    "jobSpecificPayload": {
                        "type": "string",
                        "description": "Optional JSON string with operation specific parameters.",
                    },
                },
                "required": ["pricingFileId", "operation", "solver"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getPricingAnalysisJobStatus",
            "description": "Get the status, and the result once completed, of an analysis job.",
            "parameters": {
                "type": "object",
                "properties": {"jobId": {"type": "string", "description": "The analysis job ID."}},
                "required": ["jobId"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "initiatePricingPageTransformation",
            "description": "Start turning a public SaaS pricing page into a Pricing2Yaml file. Asynchronous; "
            "returns a task ID.",
            "parameters": {
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "Public http(s) URL of the pricing page."},
                    "model": {"type": "string", "description": "Optional model the transformation should use."},
                    "max_tries": {
                        "type": "integer",
                        "description": "Optional maximum number of attempts at fixing YAML syntax.",
                    },
                },
                "required": ["url"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getTransformationTaskStatus",
            "description": "Check a pricing page transformation task. When it has completed the YAML is saved "
            "as a new pricing file.",
            "parameters": {
                "type": "object",
                "properties": {"taskId": {"type": "string", "description": "The transformation task ID."}},
                "required": ["taskId"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getPricingStrategyAdvice",
            "description": "General pricing strategy advice or explanation of concepts and results. Makes no "
            "external call; answer from your own knowledge.",
            "parameters": {
                "type": "object",
                "properties": {"topic": {"type": "string", "description": "The topic or question."}},
                "required": ["topic"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "getAvailableTransformationFiles",
            "description": "List pricing files produced by completed transformations. Any of them can be used "
            "as pricingFileId.",
            "parameters": {"type": "object", "properties": {}, "required": []},
        },
    },
]

REQUIRED_ARGS: Dict[str, List[str]] = {
    tool["function"]["name"]: list(tool["function"]["parameters"].get("required", [])) for tool in TOOLS
}


def get_tools() -> List[Dict[str, Any]]:
    return TOOLS


def _missing_argument(request: ToolCallRequest) -> Optional[str]:
    for name in REQUIRED_ARGS.get(request.name, []):
        value = request.arguments.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return name
    return None


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _parse_max_tries(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValidationError("max_tries must be an integer", field="max_tries")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("max_tries must be an integer", field="max_tries") from exc
    if parsed != value and not (isinstance(value, str) and value.strip() == str(parsed)):
        raise ValidationError("max_tries must be an integer", field="max_tries")
    if parsed < 1:
        raise ValidationError("max_tries must be at least 1", field="max_tries")
    return parsed


def _error_text(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return value if isinstance(value, str) else json.dumps(value, default=str)


def _parse_filters(value: Any) -> Optional[Dict[str, Any]]:
    if value in (None, "", {}):
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ValidationError("filters must be a JSON object", field="filters") from exc
    if not isinstance(value, dict):
        raise ValidationError("filters must be a JSON object", field="filters")
    return value


Handler = Callable[[ToolCallRequest, Session], Awaitable[ToolCallResult]]


class ToolDispatcher:
    def __init__(
        self,
        store: SessionStore,
        file_store: FileStore,
        analysis: AnalysisClient,
        transformation: Optional[TransformationClient] = None,
        *,
        auto_adopt_transformation_context: bool = True,
    ):
        self.store = store
        self.file_store = file_store
        self.analysis = analysis
        self.transformation = transformation
        self.auto_adopt_transformation_context = auto_adopt_transformation_context
        self._handlers: Dict[str, Handler] = {
            "getPricingSummary": self._pricing_summary,
            "startPricingAnalysisJob": self._start_analysis_job,
            "getPricingAnalysisJobStatus": self._analysis_job_status,
            "initiatePricingPageTransformation": self._start_transformation,
            "getTransformationTaskStatus": self._transformation_status,
            "getPricingStrategyAdvice": self._strategy_advice,
            "getAvailableTransformationFiles": self._transformation_files,
        }

    async def execute(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        """Run one tool call against ``session``. The caller holds the session lock."""
        handler = self._handlers.get(request.name)
        missing = _missing_argument(request)
        if handler is None:
            result = ToolCallResult.failure(request, f"Unknown tool: {request.name}")
        elif missing is not None:
            result = ToolCallResult.failure(request, f"Missing required parameter: {missing}")
        else:
            try:
                result = await handler(request, session)
            except FatalError:
                raise
            except HarveyError as exc:
                result = ToolCallResult.failure(request, exc.message)
            except (httpx.HTTPError, asyncio.TimeoutError, OSError, ValueError, TypeError) as exc:
                result = ToolCallResult.failure(request, f"{request.name} failed: {exc}")
        if result.ok:
            logger.info("Session %s: tool %s succeeded", session.id, request.name)
        else:
            logger.info("Session %s: tool %s failed: %s", session.id, request.name, result.outcome.message)
        return result

    async def _load_pricing_file(self, session: Session, file_id: str) -> Tuple[FileRef, bytes, str]:
        ref = await self.store.resolve_file(session, file_id)
        content = await self.file_store.read(ref.id)
        validation = validate_pricing_yaml(content.decode("utf-8", errors="replace"))
        if not validation.is_valid:
            raise ValidationError(f"Invalid YAML file: {validation.error}", field=validation.missing_field)
        source = "session" if file_id in session.files else TRANSFORMATION_PREFIX
        return ref, content, source

    async def _pricing_summary(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        ref, content, source = await self._load_pricing_file(session, str(request.arguments["pricingFileId"]))
        summary = await self.analysis.get_summary(ref.original_name, content)
        return ToolCallResult.success(
            request,
            {"summary": summary, "fileId": ref.id, "fileName": ref.original_name, "fileSource": source},
            "Pricing summary generated successfully",
        )

    async def _start_analysis_job(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        args = request.arguments
        operation = str(args["operation"]).strip()
        if operation not in VALID_OPERATIONS:
            return ToolCallResult.failure(
                request, f"Invalid operation type. Must be one of: {', '.join(VALID_OPERATIONS)}"
            )
        objective = args.get("objective") or None
        if objective is not None and objective not in VALID_OBJECTIVES:
            return ToolCallResult.failure(
                request, f"Invalid objective. Must be one of: {', '.join(VALID_OBJECTIVES)}"
            )
        filters = _parse_filters(args.get("filters"))
        extra = args.get("jobSpecificPayload") or None
        if extra is not None and not isinstance(extra, str):
            extra = json.dumps(extra)
        ref, content, source = await self._load_pricing_file(session, str(args["pricingFileId"]))
        job = await self.analysis.start_analysis_job(
            ref.original_name,
            content,
            operation,
            str(args["solver"]),
            filters=filters,
            objective=objective,
            job_specific_payload=extra,
        )
        job_id = job.get("jobId")
        if not job_id:
            raise CollaboratorError("analysis", "Analysis service did not return a job ID")
        session.jobs.record(str(job_id), "analysis", status=str(job.get("status") or "pending"))
        return ToolCallResult.success(
            request,
            {"job": job, "fileId": ref.id, "fileName": ref.original_name, "fileSource": source},
            f"Analysis job started successfully. Job ID: {job_id}",
        )

    async def _analysis_job_status(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        job_id = str(request.arguments["jobId"])
        job = await self.analysis.get_job_status(job_id)
        session.jobs.update_status(
            job_id, str(job.get("status") or ""), kind="analysis", detail=_error_text(job.get("error"))
        )
        return ToolCallResult.success(request, {"job": job}, f"Job status retrieved for {job_id}")

    async def _start_transformation(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        if self.transformation is None:
            return ToolCallResult.failure(
                request, "Transformation service is not available. Please contact the administrator."
            )
        url = str(request.arguments["url"]).strip()
        if not _is_http_url(url):
            return ToolCallResult.failure(request, "Invalid URL format. Please provide a valid HTTP/HTTPS URL.")
        max_tries = _parse_max_tries(request.arguments.get("max_tries"))
        task = await self.transformation.start_transformation(
            url,
            model=request.arguments.get("model") or None,
            max_tries=max_tries,
        )
        task_id = task.get("task_id")
        if not task_id:
            raise CollaboratorError("transformation", "Transformation service did not return a task ID")
        session.jobs.record(str(task_id), "transformation", status=str(task.get("status") or "pending"), source_url=url)
        return ToolCallResult.success(
            request,
            {"task": task, "taskId": task_id},
            f"Transformation started for {url}. Task ID: {task_id}. This may take a few minutes.",
        )

    async def _transformation_status(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        if self.transformation is None:
            return ToolCallResult.failure(request, "Transformation service is not available.")
        task_id = str(request.arguments["taskId"])
        status = await self.transformation.get_status(task_id)
        job = session.jobs.update_status(
            task_id, status["status"], kind="transformation", detail=_error_text(status["error"])
        )
        yaml_content = status["yaml_content"]
        payload: Dict[str, Any] = {"taskId": task_id, "status": status["status"], "error": status["error"]}
        if job.status != "completed" or not yaml_content:
            return ToolCallResult.success(request, payload, f"Transformation task status retrieved for {task_id}")

        payload.update(
            {
                "yamlContentPreview": yaml_content[:YAML_PREVIEW_CHARS]
                + ("..." if len(yaml_content) > YAML_PREVIEW_CHARS else ""),
                "yamlSize": len(yaml_content),
                "canBeUsedForAnalysis": True,
                "contextAutoUpdated": False,
            }
        )
        try:
            ref, created = await self._transformation_output(session, task_id, yaml_content)
        except OSError as exc:
            logger.warning("Saving transformation %s failed: %s", task_id, exc)
            payload["saveError"] = f"Failed to save file: {exc}"
            return ToolCallResult.success(request, payload, f"Transformation completed for {task_id}")

        payload["savedFile"] = {"fileId": ref.id, "fileName": ref.original_name}
        message = f"Transformation completed for {task_id}. Saved as {ref.original_name} (file ID {ref.id})."
        if created and self.auto_adopt_transformation_context:
            await self.store.apply_pricing_context(session, ref.id, source="transformation")
            payload["contextAutoUpdated"] = True
            message += " It is now the pricing context for this conversation."
        return ToolCallResult.success(request, payload, message)

    async def _transformation_output(self, session: Session, task_id: str, yaml_content: str) -> Tuple[FileRef, bool]:
        """Return the saved file for a completed task, saving it on the first poll only."""
        job = session.jobs.require(task_id)
        ref = None
        if job.output_file_id:
            ref = await self.file_store.get(job.output_file_id)
        if ref is None:
            ref = await self.file_store.find_transformation_output(task_id)
        created = ref is None
        if ref is None:
            ref = await self.file_store.save_transformation_result(task_id, yaml_content, job.source_url)
        session.jobs.set_output_file(task_id, ref.id)
        if ref.id not in session.files:
            self.store.add_file_ref(session, ref)
        return ref, created

    async def _strategy_advice(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        topic = str(request.arguments["topic"])
        return ToolCallResult.success(
            request,
            {"adviceRequested": True, "topic": topic},
            f"Answer the pricing strategy question about '{topic}' directly from your own knowledge.",
        )

    async def _transformation_files(self, request: ToolCallRequest, session: Session) -> ToolCallResult:
        files = await self.file_store.list_by_prefix(TRANSFORMATION_PREFIX)
        return ToolCallResult.success(
            request,
            {"files": [ref.public_dict() for ref in files], "count": len(files)},
            f"Found {len(files)} transformation file(s) available for analysis",
        )

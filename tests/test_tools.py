import pytest

from harvey.errors import CollaboratorError
from harvey.job_registry import JobRegistry
from harvey.tools import REQUIRED_ARGS, TOOLS, ToolDispatcher
from tests.fakes import PRICING_YAML, FakeAnalysisClient, FakeTransformationClient, call, completed, pending


def test_catalogue_declares_every_tool():
    names = [tool["function"]["name"] for tool in TOOLS]
    assert names == [
        "getPricingSummary",
        "startPricingAnalysisJob",
        "getPricingAnalysisJobStatus",
        "initiatePricingPageTransformation",
        "getTransformationTaskStatus",
        "getPricingStrategyAdvice",
        "getAvailableTransformationFiles",
    ]
    assert REQUIRED_ARGS["startPricingAnalysisJob"] == ["pricingFileId", "operation", "solver"]
    assert REQUIRED_ARGS["getAvailableTransformationFiles"] == []


@pytest.mark.asyncio
async def test_unknown_tool_is_a_failure(dispatcher, store):
    session = await store.create()
    result = await dispatcher.execute(call("deleteEverything"), session)
    assert result.ok is False
    assert result.outcome.message == "Unknown tool: deleteEverything"
    assert result.name == "deleteEverything"


@pytest.mark.asyncio
async def test_missing_argument_names_field(dispatcher, store):
    session = await store.create()
    result = await dispatcher.execute(call("startPricingAnalysisJob", pricingFileId="f", operation="optimal"), session)
    assert result.ok is False
    assert "solver" in result.outcome.message


@pytest.mark.asyncio
async def test_summary_for_session_file(dispatcher, store, fake_analysis):
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    request = call("getPricingSummary", pricingFileId=ref.id, unexpected="ignored")
    result = await dispatcher.execute(request, session)
    assert result.ok
    assert result.call_id == request.id
    assert result.outcome.payload["summary"]["numberOfPlans"] == 2
    assert result.outcome.payload["fileSource"] == "session"
    assert fake_analysis.summary_calls[0]["file_name"] == "pricing.yaml"
    assert fake_analysis.summary_calls[0]["content"] == PRICING_YAML.encode()


@pytest.mark.asyncio
async def test_summary_resolves_transformation_pool(dispatcher, store, file_store):
    session = await store.create()
    produced = await file_store.save_transformation_result("task-1", PRICING_YAML, "https://acme.io/pricing")
    result = await dispatcher.execute(call("getPricingSummary", pricingFileId=produced.id), session)
    assert result.ok
    assert result.outcome.payload["fileSource"] == "transformation"


@pytest.mark.asyncio
async def test_summary_unknown_file(dispatcher, store, fake_analysis):
    session = await store.create()
    result = await dispatcher.execute(call("getPricingSummary", pricingFileId="nope"), session)
    assert result.ok is False
    assert "nope" in result.outcome.message
    assert "Upload" in result.outcome.message
    assert fake_analysis.summary_calls == []


@pytest.mark.asyncio
async def test_summary_rejects_invalid_file(dispatcher, store, fake_analysis):
    session = await store.create()
    ref = await store.attach_file(session.id, b"saasName: Acme\nversion: 1\n", "broken.yaml")
    result = await dispatcher.execute(call("getPricingSummary", pricingFileId=ref.id), session)
    assert result.ok is False
    assert "plans" in result.outcome.message
    assert fake_analysis.summary_calls == []


@pytest.mark.asyncio
async def test_collaborator_error_becomes_failure(store, file_store, fake_transformation):
    analysis = FakeAnalysisClient(error=CollaboratorError("analysis", "Failed to get pricing summary: boom", status=500))
    dispatcher = ToolDispatcher(store, file_store, analysis, fake_transformation)
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    result = await dispatcher.execute(call("getPricingSummary", pricingFileId=ref.id), session)
    assert result.ok is False
    assert "boom" in result.outcome.message


@pytest.mark.asyncio
async def test_start_job_validates_operation(dispatcher, store):
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    result = await dispatcher.execute(
        call("startPricingAnalysisJob", pricingFileId=ref.id, operation="explode", solver="minizinc"), session
    )
    assert result.ok is False
    assert "validate, optimal, subscriptions, filter" in result.outcome.message


@pytest.mark.asyncio
async def test_start_job_records_job(dispatcher, store, fake_analysis):
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    result = await dispatcher.execute(
        call(
            "startPricingAnalysisJob",
            pricingFileId=ref.id,
            operation="filter",
            solver="minizinc",
            filters='{"maxPrice": 30, "features": ["apiAccess"]}',
        ),
        session,
    )
    assert result.ok
    assert "job-1" in result.outcome.message
    assert fake_analysis.job_calls[0]["filters"] == {"maxPrice": 30, "features": ["apiAccess"]}
    job = session.jobs.get("job-1")
    assert job.kind == "analysis"
    assert job.status == "pending"

    status = await dispatcher.execute(call("getPricingAnalysisJobStatus", jobId="job-1"), session)
    assert status.ok
    assert status.outcome.payload["job"]["result"] == {"cardinality": 4}
    assert session.jobs.get("job-1").status == "completed"


@pytest.mark.asyncio
async def test_start_job_rejects_malformed_filters(dispatcher, store, fake_analysis):
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    result = await dispatcher.execute(
        call("startPricingAnalysisJob", pricingFileId=ref.id, operation="filter", solver="minizinc", filters="{oops"),
        session,
    )
    assert result.ok is False
    assert "filters" in result.outcome.message
    assert fake_analysis.job_calls == []


@pytest.mark.asyncio
async def test_transformation_rejects_bad_url(dispatcher, store, fake_transformation):
    session = await store.create()
    result = await dispatcher.execute(call("initiatePricingPageTransformation", url="not a url"), session)
    assert result.ok is False
    assert "Invalid URL" in result.outcome.message
    assert fake_transformation.start_calls == []


@pytest.mark.asyncio
async def test_transformation_unavailable(store, file_store, fake_analysis):
    dispatcher = ToolDispatcher(store, file_store, fake_analysis, None)
    session = await store.create()
    result = await dispatcher.execute(call("initiatePricingPageTransformation", url="https://acme.io/pricing"), session)
    assert result.ok is False
    assert "not available" in result.outcome.message


@pytest.mark.asyncio
async def test_transformation_poll_is_idempotent(store, file_store, fake_analysis):
    transformation = FakeTransformationClient({"task-1": [pending(), completed()]})
    dispatcher = ToolDispatcher(store, file_store, fake_analysis, transformation)
    session = await store.create()

    started = await dispatcher.execute(call("initiatePricingPageTransformation", url="https://acme.io/pricing"), session)
    assert started.ok
    assert session.jobs.get("task-1").source_url == "https://acme.io/pricing"

    first = await dispatcher.execute(call("getTransformationTaskStatus", taskId="task-1"), session)
    assert first.outcome.payload["status"] == "PENDING"
    assert "savedFile" not in first.outcome.payload

    second = await dispatcher.execute(call("getTransformationTaskStatus", taskId="task-1"), session)
    third = await dispatcher.execute(call("getTransformationTaskStatus", taskId="task-1"), session)
    saved = second.outcome.payload["savedFile"]
    assert saved["fileName"] == "pricing_from_acme.io.yaml"
    assert third.outcome.payload["savedFile"]["fileId"] == saved["fileId"]
    assert len(await file_store.list_by_prefix("transformation")) == 1
    assert session.jobs.get("task-1").output_file_id == saved["fileId"]
    assert saved["fileId"] in session.files

    assert second.outcome.payload["contextAutoUpdated"] is True
    assert third.outcome.payload["contextAutoUpdated"] is False
    assert session.pricing_context.file_id == saved["fileId"]
    assert session.pricing_context.source == "transformation"
    assert second.outcome.payload["yamlSize"] == len(PRICING_YAML)
    assert second.outcome.payload["yamlContentPreview"].endswith("...")


@pytest.mark.asyncio
async def test_transformation_context_adoption_can_be_disabled(store, file_store, fake_analysis):
    transformation = FakeTransformationClient({"task-1": [completed()]})
    dispatcher = ToolDispatcher(
        store, file_store, fake_analysis, transformation, auto_adopt_transformation_context=False
    )
    session = await store.create()
    await dispatcher.execute(call("initiatePricingPageTransformation", url="https://acme.io/pricing"), session)
    result = await dispatcher.execute(call("getTransformationTaskStatus", taskId="task-1"), session)
    assert result.ok
    assert result.outcome.payload["contextAutoUpdated"] is False
    assert session.pricing_context is None


@pytest.mark.asyncio
async def test_transformation_unknown_task(dispatcher, store):
    session = await store.create()
    result = await dispatcher.execute(call("getTransformationTaskStatus", taskId="ghost"), session)
    assert result.ok is False
    assert result.outcome.message == "Task not found"


@pytest.mark.asyncio
async def test_advice_makes_no_external_call(dispatcher, store, fake_analysis):
    session = await store.create()
    result = await dispatcher.execute(call("getPricingStrategyAdvice", topic="freemium"), session)
    assert result.ok
    assert result.outcome.payload == {"adviceRequested": True, "topic": "freemium"}
    assert fake_analysis.summary_calls == [] and fake_analysis.job_calls == []


@pytest.mark.asyncio
async def test_available_transformation_files(dispatcher, store, file_store):
    session = await store.create()
    empty = await dispatcher.execute(call("getAvailableTransformationFiles"), session)
    assert empty.outcome.payload["count"] == 0
    await file_store.save_transformation_result("task-1", PRICING_YAML, "https://acme.io/pricing")
    listed = await dispatcher.execute(call("getAvailableTransformationFiles"), session)
    assert listed.outcome.payload["count"] == 1
    assert listed.outcome.payload["files"][0]["original_name"] == "pricing_from_acme.io.yaml"


@pytest.mark.asyncio
async def test_transformation_rejects_non_integer_max_tries(dispatcher, store, fake_transformation):
    session = await store.create()
    result = await dispatcher.execute(
        call("initiatePricingPageTransformation", url="https://acme.io/pricing", max_tries="three"), session
    )
    assert result.ok is False
    assert result.outcome.message == "max_tries must be an integer"
    assert fake_transformation.start_calls == []
    assert len(session.jobs.all()) == 0


@pytest.mark.asyncio
async def test_transformation_accepts_numeric_string_max_tries(dispatcher, store, fake_transformation):
    session = await store.create()
    result = await dispatcher.execute(
        call("initiatePricingPageTransformation", url="https://acme.io/pricing", max_tries="3"), session
    )
    assert result.ok
    assert fake_transformation.start_calls[0]["max_tries"] == 3


@pytest.mark.asyncio
async def test_polling_unchanged_analysis_job_is_stable(store, file_store, fake_transformation):
    analysis = FakeAnalysisClient(job_status={"jobId": "job-1", "status": "RUNNING"})
    dispatcher = ToolDispatcher(store, file_store, analysis, fake_transformation)
    session = await store.create()
    ref = await store.attach_file(session.id, PRICING_YAML.encode(), "pricing.yaml")
    await dispatcher.execute(
        call("startPricingAnalysisJob", pricingFileId=ref.id, operation="validate", solver="minizinc"), session
    )

    first = await dispatcher.execute(call("getPricingAnalysisJobStatus", jobId="job-1"), session)
    second = await dispatcher.execute(call("getPricingAnalysisJobStatus", jobId="job-1"), session)
    assert first.outcome.payload == second.outcome.payload
    assert session.jobs.get("job-1").status == "running"
    assert [job.id for job in session.jobs.all()] == ["job-1"]


def test_poll_without_status_keeps_last_known_status():
    registry = JobRegistry()
    registry.record("job-1", "analysis")
    registry.update_status("job-1", "RUNNING")
    registry.update_status("job-1", "", detail="still working")
    assert registry.get("job-1").status == "running"
    assert registry.get("job-1").detail == "still working"
    registry.update_status("job-1", "COMPLETED")
    assert registry.get("job-1").status == "completed"

import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .connectors import close_service_layer, create_service_layer
from .models import (
    CatalogResponse,
    ClockRequest,
    EvaluateRequest,
    EvaluateResponse,
    ExecutionResponse,
    HealthResponse,
    ResumeResponse,
    ScheduledRulesResponse,
    TriggerRequest,
    ValidationResponse,
)
from .services import ServiceError
from .workflow.dispatcher import available_actions, available_conditions
from .workflow.engine import WorkflowEngine
from .workflow.errors import (
    DefinitionNotFound,
    EntityNotFound,
    ExecutionNotFound,
    StructuralError,
)
from .workflow.report import ExecutionStats
from .workflow.schema import EntityRef, Workflow, WorkflowRule
from .workflow.validator import parse_graph

load_dotenv()

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

services = create_service_layer(settings)
engine = WorkflowEngine.from_settings(settings, services)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("ticketflow API starting: connector_mode=%s delay_mode=%s", settings.connector_mode, settings.delay_mode)
    yield
    await engine.close()
    await close_service_layer(engine.services)


app = FastAPI(
    title="ticketflow API",
    description="Workflow and rule automation for helpdesk tickets",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _execution_response(execution_id: str) -> ExecutionResponse:
    execution = engine.get_execution(execution_id)
    return ExecutionResponse(execution_id=execution.id, status=execution.status, error=execution.error)


@app.get("/api/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@app.get("/api/catalog", response_model=CatalogResponse)
def catalog():
    return CatalogResponse(actions=available_actions(), conditions=available_conditions())


# --- Workflow definitions ---

@app.post("/api/workflows/validate", response_model=ValidationResponse)
def validate_workflow(graph: dict[str, Any] = Body(...)):
    try:
        parse_graph(graph)
    except StructuralError as e:
        return JSONResponse(
            status_code=422,
            content=ValidationResponse(valid=False, reason=e.reason, message=str(e)).model_dump(),
        )
    return ValidationResponse(valid=True)


@app.get("/api/workflows")
def list_workflows():
    return [wf.model_dump(mode="json", by_alias=True) for wf in engine.definitions.list_workflows()]


@app.post("/api/workflows")
def save_workflow(workflow: Workflow):
    engine.definitions.save_workflow(workflow)
    return workflow.model_dump(mode="json", by_alias=True)


@app.get("/api/workflows/{workflow_id}")
def get_workflow(workflow_id: str):
    wf = engine.definitions.load_workflow(workflow_id)
    if wf is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return wf.model_dump(mode="json", by_alias=True)


@app.delete("/api/workflows/{workflow_id}")
def delete_workflow(workflow_id: str):
    deleted = engine.definitions.delete_workflow(workflow_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return {"status": "deleted", "workflow_id": workflow_id}


@app.post("/api/workflows/{workflow_id}/run", response_model=ExecutionResponse)
async def run_workflow(workflow_id: str, request: TriggerRequest):
    ref = EntityRef(entity_type=request.entity_type, entity_id=request.entity_id)
    try:
        execution_id = await engine.run_workflow(workflow_id, ref, request.triggered_by, wait=request.wait)
    except (DefinitionNotFound, EntityNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StructuralError as e:
        raise HTTPException(status_code=422, detail={"reason": e.reason, "message": str(e)})
    return _execution_response(execution_id)


@app.get("/api/workflows/{workflow_id}/executions")
def list_workflow_executions(workflow_id: str, status: str | None = None, limit: int = 50):
    if engine.definitions.load_workflow(workflow_id) is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    executions = engine.history(workflow_id=workflow_id, status=status, limit=limit)
    return [e.model_dump(mode="json") for e in executions]


@app.get("/api/workflows/{workflow_id}/stats", response_model=ExecutionStats)
def workflow_stats(workflow_id: str):
    if engine.definitions.load_workflow(workflow_id) is None:
        raise HTTPException(status_code=404, detail="Workflow not found")
    return engine.stats(workflow_id=workflow_id)


# --- Rules ---

@app.get("/api/rules")
def list_rules(entity_type: str | None = None):
    return [rule.model_dump(mode="json") for rule in engine.definitions.list_rules(entity_type=entity_type)]


@app.post("/api/rules")
def save_rule(rule: WorkflowRule):
    engine.definitions.save_rule(rule)
    return rule.model_dump(mode="json")


@app.post("/api/rules/{rule_id}/run", response_model=ExecutionResponse)
async def run_rule(rule_id: str, request: TriggerRequest):
    ref = EntityRef(entity_type=request.entity_type, entity_id=request.entity_id)
    try:
        execution_id = await engine.run_rule(rule_id, ref, request.triggered_by, wait=request.wait)
    except (DefinitionNotFound, EntityNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _execution_response(execution_id)


@app.post("/api/rules/{rule_id}/deactivate")
def deactivate_rule(rule_id: str):
    try:
        rule = engine.deactivate_rule(rule_id)
    except DefinitionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return rule.model_dump(mode="json")


@app.get("/api/rules/{rule_id}/executions")
def list_rule_executions(rule_id: str, status: str | None = None, limit: int = 50):
    if engine.definitions.load_rule(rule_id) is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return [e.model_dump(mode="json") for e in engine.history(rule_id=rule_id, status=status, limit=limit)]


@app.get("/api/rules/{rule_id}/stats", response_model=ExecutionStats)
def rule_stats(rule_id: str):
    if engine.definitions.load_rule(rule_id) is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return engine.stats(rule_id=rule_id)


@app.post("/api/entities/{entity_type}/{entity_id}/evaluate", response_model=EvaluateResponse)
async def evaluate_entity(entity_type: str, entity_id: str, request: EvaluateRequest | None = None):
    request = request or EvaluateRequest()
    ref = EntityRef(entity_type=entity_type, entity_id=int(entity_id) if entity_id.isdigit() else entity_id)
    try:
        execution_ids = await engine.evaluate_rules_for(ref, request.triggered_by, wait=request.wait)
        workflow_execution_ids = await engine.trigger_workflows_for(ref, request.triggered_by, wait=request.wait)
    except EntityNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return EvaluateResponse(execution_ids=execution_ids, workflow_execution_ids=workflow_execution_ids)


@app.put("/api/entities/{entity_type}/{entity_id}")
def put_entity(entity_type: str, entity_id: str, fields: dict[str, Any] = Body(...)):
    ref = EntityRef(entity_type=entity_type, entity_id=int(entity_id) if entity_id.isdigit() else entity_id)
    try:
        return engine.services.entities.put(ref, fields)
    except ServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))


# --- Automation passes ---

@app.post("/api/automation/scheduled-rules", response_model=ScheduledRulesResponse)
async def process_scheduled_rules(request: ClockRequest | None = None):
    now = request.now if request else None
    return ScheduledRulesResponse(**await engine.process_scheduled_rules(now))


@app.post("/api/automation/resume", response_model=ResumeResponse)
async def resume_suspended(request: ClockRequest | None = None):
    now = request.now if request else None
    return ResumeResponse(resumed=await engine.resume_due(now))


# --- Executions ---

@app.get("/api/executions/{execution_id}")
def get_execution(execution_id: str):
    try:
        report = engine.report(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    return report.to_dict()


@app.get("/api/executions/{execution_id}/report")
def get_execution_report(execution_id: str):
    try:
        report = engine.report(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    return {"execution_id": execution_id, "markdown": report.to_markdown()}


@app.post("/api/executions/{execution_id}/cancel", response_model=ExecutionResponse)
def cancel_execution(execution_id: str):
    try:
        execution = engine.cancel(execution_id)
    except ExecutionNotFound:
        raise HTTPException(status_code=404, detail="Execution not found")
    return ExecutionResponse(execution_id=execution.id, status=execution.status, error=execution.error)

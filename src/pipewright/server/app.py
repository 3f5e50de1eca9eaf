from __future__ import annotations

from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException
from pydantic import BaseModel, Field, ValidationError

from ..dispatcher import Dispatcher
from ..model import Event
from ..runner import Run

# -------------------- Schemas --------------------

class EventEnvelope(BaseModel):
    event: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ref: str | None = None
    sha: str | None = None
    changed_files: list[str] | None = None

class DispatchRequest(BaseModel):
    ref: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)

class DispatchResponse(BaseModel):
    run_ids: list[int]
    workflows: list[str]

class JobStatus(BaseModel):
    state: str
    reason: str | None = None

class RunResponse(BaseModel):
    run_id: int
    workflow: str
    event: str
    status: str
    jobs: dict[str, JobStatus]

class WorkflowSummary(BaseModel):
    name: str
    events: list[str]
    jobs: list[str]


def run_response(run: Run) -> RunResponse:
    return RunResponse(
        run_id=run.run_id,
        workflow=run.workflow.name,
        event=run.event.name,
        status=run.status,
        jobs={ex.key: JobStatus(state=ex.state.value, reason=ex.reason) for ex in run.executions},
    )


def create_app(dispatcher: Dispatcher) -> FastAPI:
    app = FastAPI(title="pipewright event dispatcher")
    app.state.dispatcher = dispatcher

    def lookup_run(run_id: int) -> Run:
        try:
            return dispatcher.get_run(run_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found") from None

    # -------------------- Endpoints --------------------

    @app.get("/workflows", response_model=list[WorkflowSummary])
    async def list_workflows():
        return [
            WorkflowSummary(name=wf.name, events=[t.event for t in wf.triggers], jobs=list(wf.jobs))
            for wf in dispatcher.workflows
        ]

    @app.post("/events", response_model=DispatchResponse, status_code=202)
    async def receive_event(
        body: dict[str, Any] = Body(default_factory=dict),
        x_github_event: str | None = Header(default=None),
    ):
        if x_github_event:
            event = Event(name=x_github_event, payload=body)
        else:
            try:
                env = EventEnvelope.model_validate(body)
            except ValidationError as e:
                raise HTTPException(status_code=422, detail="missing X-GitHub-Event header or 'event' field") from e
            event = Event(
                name=env.event,
                payload=env.payload,
                ref=env.ref,
                sha=env.sha,
                changed_files=tuple(env.changed_files) if env.changed_files is not None else None,
            )
        runs = dispatcher.dispatch(event)
        return DispatchResponse(run_ids=[r.run_id for r in runs], workflows=[r.workflow.name for r in runs])

    @app.post("/workflows/{name}/dispatches", response_model=RunResponse, status_code=202)
    async def dispatch_workflow(name: str, req: DispatchRequest):
        try:
            run = dispatcher.dispatch_manual(name, ref=req.ref, inputs=req.inputs)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Workflow '{name}' not found") from None
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return run_response(run)

    @app.get("/runs/{run_id}", response_model=RunResponse)
    async def get_run(run_id: int):
        return run_response(lookup_run(run_id))

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    async def cancel_run(run_id: int):
        run = lookup_run(run_id)
        if run.done:
            raise HTTPException(status_code=409, detail=f"Run {run_id} already {run.status}")
        run.cancel()
        return run_response(run)

    return app

"""
Skill Arena - live challenge API
REST + WebSocket surface over the challenge session manager and the AI judge
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .challenge import OFFLINE_CODE, ChallengeSessionManager
from .config import Settings, configure_logging, load_settings
from .errors import (
    ArenaError,
    NotSessionHost,
    ScenarioNotReady,
    SessionConflict,
    SessionNotFound,
    StoreUnavailable,
)
from .judge import JudgeAdapter
from .lobby import OFFLINE_MESSAGE, PASSING_SCORE, obtain_scenario
from .models import Checkpoint, ParticipantStatus, UserIdentity
from .proctoring import environment_reasons
from .store import SessionStore, create_store

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateChallengeRequest(_Body):
    host: UserIdentity
    domain: str = Field(min_length=1)


class JoinRequest(_Body):
    user: UserIdentity


class LeaveRequest(_Body):
    user_id: str = Field(alias="userId")


class HostRequest(_Body):
    requested_by: Optional[str] = Field(None, alias="requestedBy")


class ScenarioRequest(HostRequest):
    task_description: str = Field(alias="taskDescription")
    checkpoints: List[Checkpoint]


class ProgressRequest(_Body):
    user_id: str = Field(alias="userId")
    progress: int
    status: ParticipantStatus = ParticipantStatus.CODING


class ValidateRequest(_Body):
    code: str = ""


class EnvironmentRequest(_Body):
    image: str = Field(min_length=1)


def to_http(error: ArenaError) -> HTTPException:
    """Map the arena error taxonomy onto HTTP status codes"""
    if isinstance(error, SessionNotFound):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, NotSessionHost):
        return HTTPException(status_code=403, detail=error.message)
    if isinstance(error, SessionConflict):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ScenarioNotReady):
        return HTTPException(status_code=425, detail=error.message)
    if isinstance(error, StoreUnavailable):
        return HTTPException(status_code=503, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    judge: Optional[JudgeAdapter] = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.store = store or create_store(settings)
        app.state.manager = ChallengeSessionManager(app.state.store)
        app.state.judge = judge or JudgeAdapter.from_settings(settings)
        logger.info(f"Skill Arena API ready (store={type(app.state.store).__name__})")
        yield
        await app.state.store.close()

    app = FastAPI(title="Skill Arena API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def publish_generated_scenario(code: str, domain: str, requested_by: Optional[str]):
        scenario, fell_back = await obtain_scenario(app.state.judge, domain, settings.scenario_timeout)
        try:
            await app.state.manager.set_scenario(
                code, scenario.task_description, scenario.checkpoints, requested_by=requested_by
            )
        except ArenaError as e:
            logger.warning(f"Generated scenario for {code} not published: {e.message}")
            return
        logger.info(f"Published {'fallback' if fell_back else 'generated'} scenario for {code}")

    # ========================================================================
    # HEALTH
    # ========================================================================

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "Skill Arena API", "store": settings.store_backend}

    # ========================================================================
    # API ROUTES - CHALLENGES
    # ========================================================================

    @app.post("/api/challenges")
    async def create_challenge(body: CreateChallengeRequest):
        code = await app.state.manager.create_session(body.host, body.domain)
        if code == OFFLINE_CODE:
            raise HTTPException(status_code=503, detail=OFFLINE_MESSAGE)
        return {"code": code}

    @app.get("/api/challenges/{code}")
    async def get_challenge(code: str):
        try:
            session = await app.state.manager.get_session(code.upper())
        except ArenaError as e:
            raise to_http(e)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session.to_document()

    @app.post("/api/challenges/{code}/join")
    async def join_challenge(code: str, body: JoinRequest):
        result = await app.state.manager.join_session(code.upper(), body.user)
        return result.model_dump()

    @app.post("/api/challenges/{code}/leave")
    async def leave_challenge(code: str, body: LeaveRequest):
        await app.state.manager.leave_session(code.upper(), body.user_id)
        return {"success": True}

    @app.put("/api/challenges/{code}/scenario")
    async def set_scenario(code: str, body: ScenarioRequest):
        try:
            session = await app.state.manager.set_scenario(
                code.upper(), body.task_description, body.checkpoints, requested_by=body.requested_by
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ArenaError as e:
            raise to_http(e)
        return session.to_document()

    @app.post("/api/challenges/{code}/scenario/generate", status_code=202)
    async def generate_scenario(code: str, body: HostRequest, background_tasks: BackgroundTasks):
        code = code.upper()
        try:
            session = await app.state.manager.get_session(code)
        except ArenaError as e:
            raise to_http(e)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if body.requested_by is not None and body.requested_by != session.host_id:
            raise to_http(NotSessionHost(code, body.requested_by))
        background_tasks.add_task(publish_generated_scenario, code, session.domain, body.requested_by)
        return {"status": "generating", "code": code}

    @app.post("/api/challenges/{code}/start")
    async def start_challenge(code: str, body: HostRequest):
        try:
            session = await app.state.manager.start_session(code.upper(), requested_by=body.requested_by)
        except ArenaError as e:
            raise to_http(e)
        return session.to_document()

    @app.post("/api/challenges/{code}/progress")
    async def update_progress(code: str, body: ProgressRequest):
        session = await app.state.manager.update_progress(code.upper(), body.user_id, body.progress, body.status)
        return {"success": session is not None, "session": session.to_document() if session else None}

    @app.get("/api/challenges/{code}/ranking")
    async def get_ranking(code: str):
        try:
            ranking = await app.state.manager.ranking(code.upper())
        except ArenaError as e:
            raise to_http(e)
        return [
            {"rank": i + 1, **p.to_document()}
            for i, p in enumerate(ranking)
        ]

    @app.post("/api/challenges/{code}/checkpoints/{checkpoint_id}/validate")
    async def validate_checkpoint(code: str, checkpoint_id: int, body: ValidateRequest):
        try:
            session = await app.state.manager.get_session(code.upper())
        except ArenaError as e:
            raise to_http(e)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        checkpoint = next((c for c in session.checkpoints if c.id == checkpoint_id), None)
        if checkpoint is None:
            raise HTTPException(status_code=404, detail="Checkpoint not found")

        result = await app.state.judge.validate_challenge_step(session.domain, checkpoint.title, body.code)
        return {
            "checkpointId": checkpoint_id,
            "passed": result.success and result.score > PASSING_SCORE,
            **result.to_document(),
        }

    # ========================================================================
    # API ROUTES - PROCTORING
    # ========================================================================

    @app.post("/api/proctor/environment-check")
    async def environment_check(body: EnvironmentRequest):
        result = await app.state.judge.analyze_environment_snapshot(body.image)
        return {
            **result.to_document(),
            "ready": result.passed,
            "violations": environment_reasons(result),
        }

    # ========================================================================
    # WEBSOCKET - LIVE SESSION SNAPSHOTS
    # ========================================================================

    @app.websocket("/api/ws/challenges/{code}")
    async def challenge_feed(ws: WebSocket, code: str):
        await ws.accept()
        code = code.upper()
        snapshots: asyncio.Queue = asyncio.Queue()

        def on_update(session):
            snapshots.put_nowait(session.to_document() if session is not None else None)

        async def pump():
            while True:
                document = await snapshots.get()
                await ws.send_json(document)
                if document is None:
                    await ws.close()
                    return

        unsubscribe = app.state.manager.subscribe_to_session(code, on_update)
        sender = asyncio.create_task(pump())
        try:
            while not sender.done():
                receiver = asyncio.create_task(ws.receive_text())
                done, _ = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if receiver not in done:
                    receiver.cancel()
                    break
                receiver.result()
        except WebSocketDisconnect:
            logger.debug(f"Watcher of {code} disconnected")
        finally:
            unsubscribe()
            sender.cancel()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

"""
Challenge Session Manager - create/join/leave/start/progress for shared race sessions.

Everything that depends on the current participants list goes through
`store.transact`; plain merges are only used for fields nobody else writes.
"""
import logging
import secrets
import string
from typing import Callable, List, Optional, Sequence, Union

from .errors import (
    ArenaError,
    NotSessionHost,
    ScenarioNotReady,
    SessionConflict,
    SessionNotFound,
    StoreUnavailable,
)
from .models import (
    ChallengeSession,
    Checkpoint,
    JoinResult,
    Participant,
    ParticipantStatus,
    SessionStatus,
    UserIdentity,
)
from .race import now_ms, rank_participants
from .store import SessionStore, Unsubscribe

logger = logging.getLogger(__name__)

OFFLINE_CODE = "OFFLINE"
CODE_LENGTH = 6
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_ATTEMPTS = 5

ALREADY_STARTED = "Session is already active or finished"
CONNECTION_FAILED = "Connection failed"


def generate_code(length: int = CODE_LENGTH) -> str:
    """Short shareable session code"""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _initials(name: str) -> str:
    return (name or "?")[:2].upper()


class ChallengeSessionManager:
    def __init__(
        self,
        store: SessionStore,
        clock: Optional[Callable[[], int]] = None,
        code_factory: Optional[Callable[[], str]] = None,
    ):
        self.store = store
        self.clock = clock or now_ms
        self.code_factory = code_factory or generate_code

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(self, host: UserIdentity, domain: str) -> str:
        """
        Create a waiting session with the host as its only participant.

        Returns OFFLINE_CODE when the store cannot be reached; callers treat
        it as "multiplayer unavailable", not as something to retry.
        """
        participant = Participant.from_identity(host, _initials(host.name))
        for _ in range(CODE_ATTEMPTS):
            code = self.code_factory()
            session = ChallengeSession(code=code, host_id=host.id, domain=domain, participants=[participant])
            try:
                created = await self.store.create(code, session.to_document())
            except StoreUnavailable as e:
                logger.warning(f"Could not create session for {host.id}: {e.message}")
                return OFFLINE_CODE
            if created:
                logger.info(f"Session {code} created by {host.id} ({domain})")
                return code
            logger.debug(f"Session code {code} already taken, regenerating")

        logger.error(f"Gave up creating a session after {CODE_ATTEMPTS} code collisions")
        return OFFLINE_CODE

    async def join_session(self, code: str, user: UserIdentity) -> JoinResult:
        def join(current):
            if current is None:
                raise SessionNotFound(code)
            session = ChallengeSession.model_validate(current)
            if session.participant(user.id):
                return None
            if session.status != SessionStatus.WAITING:
                raise SessionConflict(ALREADY_STARTED)
            session.participants.append(Participant.from_identity(user, _initials(user.name)))
            return session.to_document()

        try:
            await self.store.transact(code, join)
        except StoreUnavailable as e:
            logger.warning(f"Join {code} by {user.id} failed: {e.message}")
            return JoinResult(success=False, reason=CONNECTION_FAILED)
        except ArenaError as e:
            logger.info(f"Join {code} by {user.id} rejected: {e.message}")
            return JoinResult(success=False, reason=e.message)
        return JoinResult(success=True)

    async def leave_session(self, code: str, user_id: str) -> None:
        """Best effort. The document is kept even when nobody is left in it."""

        def leave(current):
            if current is None:
                return None
            participants = current.get("participants", [])
            remaining = [p for p in participants if p.get("id") != user_id]
            if len(remaining) == len(participants):
                return None
            current["participants"] = remaining
            return current

        try:
            await self.store.transact(code, leave)
        except StoreUnavailable as e:
            logger.warning(f"Leave {code} by {user_id} not delivered: {e.message}")

    async def set_scenario(
        self,
        code: str,
        task_description: str,
        checkpoints: Sequence[Union[Checkpoint, dict]],
        requested_by: Optional[str] = None,
    ) -> ChallengeSession:
        items = [c if isinstance(c, Checkpoint) else Checkpoint.model_validate(c) for c in checkpoints]
        if not task_description.strip() or not items:
            raise ValueError("A scenario needs a task description and at least one checkpoint")

        def publish(current):
            if current is None:
                raise SessionNotFound(code)
            session = ChallengeSession.model_validate(current)
            self._check_host(session, requested_by)
            if session.status != SessionStatus.WAITING:
                raise SessionConflict("The scenario can only change before the race starts")
            session.task_description = task_description
            session.checkpoints = items
            return session.to_document()

        document = await self.store.transact(code, publish)
        logger.info(f"Scenario published for {code} ({len(items)} checkpoints)")
        return ChallengeSession.model_validate(document)

    async def start_session(self, code: str, requested_by: Optional[str] = None) -> ChallengeSession:
        """
        waiting -> active. Refused while no scenario is published.
        Repeating it on an active session keeps the first startTime; on a
        finished session it does nothing.
        """

        def start(current):
            if current is None:
                raise SessionNotFound(code)
            session = ChallengeSession.model_validate(current)
            self._check_host(session, requested_by)
            if session.status != SessionStatus.WAITING:
                return None
            if not session.has_scenario:
                raise ScenarioNotReady(code)
            session.status = SessionStatus.ACTIVE
            session.start_time = self.clock()
            return session.to_document()

        document = await self.store.transact(code, start)
        session = ChallengeSession.model_validate(document)
        logger.info(f"Session {code} is {session.status.value}")
        return session

    async def update_progress(
        self,
        code: str,
        user_id: str,
        progress: int,
        status: Union[ParticipantStatus, str],
    ) -> Optional[ChallengeSession]:
        """
        Rewrite one participant's progress/status. Best effort: store errors
        and unknown sessions are logged and return None.

        Progress never goes down: a lower value than the stored one is ignored.
        """
        status = ParticipantStatus(status)
        progress = max(0, min(100, int(progress)))

        def apply(current):
            if current is None:
                return None
            session = ChallengeSession.model_validate(current)
            participant = session.participant(user_id)
            if participant is None:
                return None

            new_progress = max(participant.progress, progress)
            new_status = ParticipantStatus.FINISHED if participant.status == ParticipantStatus.FINISHED else status
            if new_progress == participant.progress and new_status == participant.status:
                return None
            participant.progress = new_progress
            participant.status = new_status

            humans = [p for p in session.participants if not p.is_bot]
            if session.status == SessionStatus.ACTIVE and humans and all(
                p.status == ParticipantStatus.FINISHED for p in humans
            ):
                session.status = SessionStatus.FINISHED
            return session.to_document()

        try:
            document = await self.store.transact(code, apply)
        except StoreUnavailable as e:
            logger.warning(f"Progress update for {user_id} in {code} dropped: {e.message}")
            return None
        if document is None:
            logger.debug(f"Progress update for {user_id}: session {code} not found")
            return None
        return ChallengeSession.model_validate(document)

    async def finish_session(self, code: str) -> Optional[ChallengeSession]:
        """active -> finished (race clock expiry or an explicit stop)"""

        def finish(current):
            if current is None or current.get("status") != SessionStatus.ACTIVE.value:
                return None
            current["status"] = SessionStatus.FINISHED.value
            return current

        document = await self.store.transact(code, finish)
        return ChallengeSession.model_validate(document) if document else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def subscribe_to_session(
        self,
        code: str,
        on_update: Callable[[Optional[ChallengeSession]], None],
    ) -> Unsubscribe:
        """on_update receives the latest session, or None once it disappears"""

        def forward(document):
            on_update(ChallengeSession.model_validate(document) if document is not None else None)

        try:
            return self.store.subscribe(code, forward)
        except StoreUnavailable as e:
            logger.warning(f"Cannot watch session {code}: {e.message}")
            return lambda: None

    async def get_session(self, code: str) -> Optional[ChallengeSession]:
        document = await self.store.get(code)
        return ChallengeSession.model_validate(document) if document is not None else None

    async def ranking(self, code: str) -> List[Participant]:
        session = await self.get_session(code)
        if session is None:
            raise SessionNotFound(code)
        return rank_participants(session.participants)

    async def reap_finished(self, code: str) -> bool:
        """Delete a finished session nobody is watching any more"""
        session = await self.get_session(code)
        if session is None or session.status != SessionStatus.FINISHED:
            return False
        if self.store.observer_count(code) > 0:
            return False
        await self.store.delete(code)
        logger.info(f"Reaped finished session {code}")
        return True

    @staticmethod
    def _check_host(session: ChallengeSession, requested_by: Optional[str]) -> None:
        if requested_by is not None and requested_by != session.host_id:
            raise NotSessionHost(session.code, requested_by)

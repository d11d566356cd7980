"""
Proctoring / anti-cheat engine.

One accumulator serves every graded flow. Browser signals and environment
snapshot results are fed in as events; the verdict is a pure comparison of
the accumulated counts against the flow's thresholds and never depends on
the AI judge being reachable.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import IntegrityViolation
from .models import EnvironmentCheck
from .race import now_ms

logger = logging.getLogger(__name__)

VOID_SCORE = 0

LIGHTING_VIOLATION = "Lighting Violation: Facial features obscured."
IDENTITY_VIOLATION = "Identity Violation: Multiple persons or absence detected."
DEVICE_VIOLATION = "Device Violation: Unauthorized electronic device in frame."
ENVIRONMENT_VIOLATION = "Robotic Proctor: Environmental Security Violation"

CLIPBOARD_REASON = "Clipboard misuse detected."
TAB_SWITCH_REASON = "Excessive window switching."
ABSENCE_REASON = "Extended absence."
ENVIRONMENT_REASON = "Persistent environment security violations."

ROUND_VOID_SPOKEN = "Integrity alert. This response has been invalidated due to security violations."


class ViolationKind(str, Enum):
    TAB_SWITCH = "tab_switch"
    FOCUS_LOST = "focus_lost"
    CLIPBOARD = "clipboard"
    ENVIRONMENT = "environment"


class EngineStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    VOID = "void"
    DISQUALIFIED = "disqualified"


class VerdictOutcome(str, Enum):
    ACCEPTED = "accepted"
    VOID = "void"
    FAILED = "failed"


DEFAULT_MESSAGES = {
    "tab_switch": "Tab Visibility Violation",
    "focus_lost": "Focus Lost: Outside Window Interaction",
    "copy": "Clipboard Violation",
    "cut": "Clipboard Violation",
    "paste": "Clipboard Violation",
}


@dataclass(frozen=True)
class Violation:
    kind: ViolationKind
    reason: str
    at: int


@dataclass(frozen=True)
class ProctorThresholds:
    """
    A count above a max_* value voids the attempt at submission; None
    disables that rule. `disqualify_at` is checked on every new violation.
    """
    name: str
    max_tab_switches: Optional[int] = None
    max_pastes: Optional[int] = None
    max_focus_lost_ms: Optional[int] = None
    max_environment_violations: Optional[int] = None
    strict_focus: bool = False
    round_scoped: bool = False
    disqualify_at: Optional[int] = None
    debounce_ms: int = 0
    messages: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MESSAGES))


TRIAL_THRESHOLDS = ProctorThresholds(
    name="trial",
    max_tab_switches=2,
    max_pastes=0,
    max_focus_lost_ms=5000,
    max_environment_violations=2,
)

INTERVIEW_THRESHOLDS = ProctorThresholds(
    name="interview",
    strict_focus=True,
    round_scoped=True,
    messages={
        **DEFAULT_MESSAGES,
        "tab_switch": "Navigation Violation: Tab switching detected.",
    },
)

EXAM_THRESHOLDS = ProctorThresholds(
    name="exam",
    strict_focus=True,
    disqualify_at=5,
    debounce_ms=3000,
)

ARENA_THRESHOLDS = ProctorThresholds(
    name="arena",
    strict_focus=True,
    messages={
        "tab_switch": "Tab Switch Detected",
        "focus_lost": "Focus Lost (Window Blur)",
        "copy": "Copy Attempt Blocked",
        "cut": "Copy Attempt Blocked",
        "paste": "Paste Attempt Blocked",
    },
)


def environment_reasons(result: EnvironmentCheck) -> List[str]:
    reasons = []
    if not result.lighting:
        reasons.append(LIGHTING_VIOLATION)
    if not result.single_person:
        reasons.append(IDENTITY_VIOLATION)
    if not result.no_devices:
        reasons.append(DEVICE_VIOLATION)
    return reasons


def environment_ready(result: EnvironmentCheck) -> bool:
    """Setup gate: all three checks must pass before a proctored flow begins"""
    return result.passed


def threshold_reasons(
    thresholds: ProctorThresholds,
    tab_switches: int,
    pastes: int,
    focus_lost_ms: int,
    environment_violations: int,
) -> List[str]:
    reasons = []
    if thresholds.max_pastes is not None and pastes > thresholds.max_pastes:
        reasons.append(CLIPBOARD_REASON)
    if thresholds.max_tab_switches is not None and tab_switches > thresholds.max_tab_switches:
        reasons.append(TAB_SWITCH_REASON)
    if thresholds.max_focus_lost_ms is not None and focus_lost_ms > thresholds.max_focus_lost_ms:
        reasons.append(ABSENCE_REASON)
    if (
        thresholds.max_environment_violations is not None
        and environment_violations > thresholds.max_environment_violations
    ):
        reasons.append(ENVIRONMENT_REASON)
    return reasons


def void_feedback(reasons: List[str]) -> str:
    return f"VERIFICATION REJECTED: {' '.join(reasons)}"


def round_void_feedback(reasons: List[str]) -> str:
    return f"SECURITY VOID: Multiple integrity violations recorded: {' | '.join(reasons)}"


@dataclass(frozen=True)
class Verdict:
    outcome: VerdictOutcome
    reasons: List[str] = field(default_factory=list)
    result: Any = None

    @property
    def accepted(self) -> bool:
        return self.outcome == VerdictOutcome.ACCEPTED

    def raise_for_integrity(self) -> None:
        if not self.accepted:
            raise IntegrityViolation(self.reasons)

    @property
    def feedback(self) -> str:
        if self.outcome == VerdictOutcome.VOID:
            return void_feedback(self.reasons)
        if self.outcome == VerdictOutcome.FAILED:
            return f"DISQUALIFIED: {' '.join(self.reasons)}"
        return ""


class ProctorEngine:
    """
    Violation accumulator for one assessment instance.

    Once a terminal verdict is reached (void, disqualification, or an
    accepted grade) the log is frozen and every further event is ignored.
    """

    def __init__(
        self,
        thresholds: ProctorThresholds,
        clock: Optional[Callable[[], int]] = None,
        on_disqualified: Optional[Callable[[List[str]], None]] = None,
    ):
        self.thresholds = thresholds
        self.clock = clock or now_ms
        self.on_disqualified = on_disqualified

        self.tab_switch_count = 0
        self.paste_count = 0
        self.focus_lost_ms = 0
        self.environment_violations: List[str] = []
        self.violations: List[Violation] = []
        self.round_violations: List[str] = []
        self.status = EngineStatus.ACTIVE

        self._hidden_since: Optional[int] = None
        self._last_violation_at: Optional[int] = None
        self._verdict: Optional[Verdict] = None

    @property
    def frozen(self) -> bool:
        return self.status != EngineStatus.ACTIVE

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on_visibility_hidden(self) -> None:
        if self.frozen:
            return
        self._hidden_since = self.clock()
        if self.thresholds.strict_focus:
            self.tab_switch_count += 1
            self._record(ViolationKind.TAB_SWITCH, self.thresholds.messages["tab_switch"])

    def on_visibility_shown(self, elapsed_ms: Optional[int] = None) -> None:
        """Adds the hidden duration; in the loose variant this is also where the switch is counted."""
        if self.frozen:
            return
        if elapsed_ms is None:
            if self._hidden_since is None:
                return
            elapsed_ms = self.clock() - self._hidden_since
        self._hidden_since = None
        self.focus_lost_ms += max(0, int(elapsed_ms))
        if not self.thresholds.strict_focus:
            self.tab_switch_count += 1
            self._record(ViolationKind.TAB_SWITCH, self.thresholds.messages["tab_switch"])

    def on_blur(self) -> bool:
        """Only the strict variant treats a plain blur as a violation"""
        if self.frozen or not self.thresholds.strict_focus:
            return False
        return self._record(ViolationKind.FOCUS_LOST, self.thresholds.messages["focus_lost"])

    def on_clipboard_attempt(self, action: str = "paste") -> bool:
        """Counts the attempt. Always returns True: the caller must cancel the clipboard action."""
        if not self.frozen:
            self.paste_count += 1
            reason = self.thresholds.messages.get(action, DEFAULT_MESSAGES["paste"])
            self._record(ViolationKind.CLIPBOARD, reason)
        return True

    def on_environment_snapshot_result(self, result: EnvironmentCheck) -> List[str]:
        """Returns the failed rules (empty when the frame passed)"""
        if self.frozen or result.passed:
            return []
        reasons = environment_reasons(result)
        self.environment_violations.append(result.feedback or ENVIRONMENT_VIOLATION)
        self._record(
            ViolationKind.ENVIRONMENT,
            result.feedback or ENVIRONMENT_VIOLATION,
            round_reasons=reasons,
        )
        return reasons

    def _record(self, kind: ViolationKind, reason: str, round_reasons: Optional[List[str]] = None) -> bool:
        now = self.clock()
        debounce = self.thresholds.debounce_ms
        if debounce and self._last_violation_at is not None and now - self._last_violation_at < debounce:
            logger.debug(f"{self.thresholds.name}: {kind.value} within debounce window, ignored")
            return False
        self._last_violation_at = now
        self.violations.append(Violation(kind, reason, now))

        if self.thresholds.round_scoped:
            if round_reasons is None:
                self.round_violations.append(reason)
            else:
                for r in round_reasons:
                    if r not in self.round_violations:
                        self.round_violations.append(r)

        cap = self.thresholds.disqualify_at
        if cap is not None and len(self.violations) >= cap:
            self._disqualify()
        return True

    def _disqualify(self) -> None:
        self.status = EngineStatus.DISQUALIFIED
        reasons = [v.reason for v in self.violations]
        self._verdict = Verdict(VerdictOutcome.FAILED, reasons)
        logger.info(f"{self.thresholds.name}: disqualified after {len(reasons)} violations")
        if self.on_disqualified:
            self.on_disqualified(reasons)

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def start_round(self) -> None:
        """Round-scoped violations reset at every new graded unit"""
        if self.frozen:
            return
        self.round_violations = []

    def integrity_violations(self) -> List[str]:
        return threshold_reasons(
            self.thresholds,
            self.tab_switch_count,
            self.paste_count,
            self.focus_lost_ms,
            len(self.environment_violations),
        )

    async def judge(self, grade: Callable[[], Awaitable[Any]]) -> Verdict:
        """
        Final verdict for the whole instance. The grader is awaited only when
        the integrity gate passes; calling judge again returns the first verdict.
        """
        if self._verdict is not None:
            return self._verdict

        reasons = self.integrity_violations()
        if reasons:
            self.status = EngineStatus.VOID
            self._verdict = Verdict(VerdictOutcome.VOID, reasons)
            logger.info(f"{self.thresholds.name}: attempt voided ({' '.join(reasons)})")
            return self._verdict

        result = await grade()
        if self._verdict is not None:
            # disqualified while the grader was running
            return self._verdict
        self.status = EngineStatus.ACCEPTED
        self._verdict = Verdict(VerdictOutcome.ACCEPTED, result=result)
        return self._verdict

    async def judge_round(self, grade: Callable[[], Awaitable[Any]]) -> Verdict:
        """Any violation in the current round voids that round only"""
        if self.status == EngineStatus.DISQUALIFIED:
            return self._verdict
        if self.round_violations:
            reasons = list(self.round_violations)
            logger.info(f"{self.thresholds.name}: round voided ({len(reasons)} violations)")
            return Verdict(VerdictOutcome.VOID, reasons)
        return Verdict(VerdictOutcome.ACCEPTED, result=await grade())

    def summary(self) -> dict:
        return {
            "flow": self.thresholds.name,
            "status": self.status.value,
            "tabSwitchCount": self.tab_switch_count,
            "pasteCount": self.paste_count,
            "focusLostTime": self.focus_lost_ms,
            "environmentViolations": list(self.environment_violations),
            "violations": [v.reason for v in self.violations],
            "roundViolations": list(self.round_violations),
        }

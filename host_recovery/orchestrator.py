"""
Escalation Orchestrator

Walks the recovery stages in a fixed order and never goes back:

    START -> LOCAL_OK
    START -> MGMT_PROBE -> MGMT_CYCLED -> MGMT_WAIT -> RECOVERED
    MGMT_PROBE / MGMT_WAIT -> OUTLET_FALLBACK
    OUTLET_FALLBACK -> OUTLET_STRUCTURED (SNMP write community given)
    OUTLET_FALLBACK / OUTLET_STRUCTURED -> OUTLET_TERMINAL
    OUTLET_STRUCTURED / OUTLET_TERMINAL -> OUTLET_WAIT -> RECOVERED
    OUTLET_TERMINAL / OUTLET_WAIT -> FAILED

FAILED carries one of two dispositions: no power path worked, or power was
cycled but the host never answered.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from host_recovery.config import RecoveryConfig
from host_recovery.errors import (
    ManagementCycleFailed, ManagementUnreachable, OutletCycleFailed, OutletError,
    ProbeUnreachable, RecoveryError, RecoveryTimeout,
)
from host_recovery.power import (
    ManagementController, PowerController, StructuredOutletController, TerminalOutletController,
)
from host_recovery.probe import ReachabilityProbe
from host_recovery.session import TerminalSession

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    START = "START"
    LOCAL_OK = "LOCAL_OK"
    MGMT_PROBE = "MGMT_PROBE"
    MGMT_CYCLED = "MGMT_CYCLED"
    MGMT_WAIT = "MGMT_WAIT"
    OUTLET_FALLBACK = "OUTLET_FALLBACK"
    OUTLET_STRUCTURED = "OUTLET_STRUCTURED"
    OUTLET_TERMINAL = "OUTLET_TERMINAL"
    OUTLET_WAIT = "OUTLET_WAIT"
    RECOVERED = "RECOVERED"
    FAILED = "FAILED"


class Disposition(Enum):
    """Final result of a run, with the process exit code it maps to"""
    HEALTHY = ("healthy", 0)
    RECOVERED = ("recovered", 0)
    DEPENDENCY_MISSING = ("dependency missing", 1)
    CONFIG_ERROR = ("configuration unusable", 1)
    POWER_PATH_FAILED = ("all outlet power paths failed", 2)
    RECOVERY_TIMEOUT = ("power cycled but host never answered", 3)

    def __init__(self, description: str, exit_code: int):
        self.description = description
        self.exit_code = exit_code

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class Transition:
    stage: Stage
    timestamp: datetime
    reason: str


@dataclass
class RecoveryAttempt:
    """Stage history of one run; nothing here outlives the process"""
    started_at: datetime = field(default_factory=datetime.now)
    transitions: List[Transition] = field(default_factory=list)
    management_skipped: bool = False
    management_cycled: bool = False
    structured_attempted: bool = False
    terminal_attempted: bool = False

    @property
    def stage(self) -> Optional[Stage]:
        return self.transitions[-1].stage if self.transitions else None

    @property
    def stages(self) -> List[Stage]:
        return [t.stage for t in self.transitions]

    def enter(self, stage: Stage, reason: str) -> None:
        if stage in self.stages:
            raise RuntimeError(f"Stage {stage.value} already visited in this run")
        self.transitions.append(Transition(stage, datetime.now(), reason))
        logger.info(f"[{stage.value}] {reason}")


@dataclass
class RecoveryResult:
    disposition: Disposition
    attempt: RecoveryAttempt
    error: Optional[RecoveryError] = None


class EscalationOrchestrator:
    """Runs the escalation for one target, one stage at a time"""

    def __init__(self, config: RecoveryConfig,
                 probe: ReachabilityProbe,
                 management: PowerController,
                 terminal: PowerController,
                 structured: Optional[PowerController] = None):
        self.config = config
        self.probe = probe
        self.management = management
        self.terminal = terminal
        self.structured = structured

    @classmethod
    def from_config(cls, config: RecoveryConfig, session: Optional[TerminalSession] = None,
                    sleep: Callable[[float], None] = time.sleep) -> 'EscalationOrchestrator':
        """Wire up the real probe and controllers; SNMP only when a write community was given"""
        tunables = config.tunables
        session = session or TerminalSession()
        probe = ReachabilityProbe(session=session, ping_count=tunables.ping_count,
                                  ping_timeout=tunables.ping_timeout, session_timeout=tunables.session_timeout,
                                  sleep=sleep)
        structured = None
        if config.outlet.has_write_secret:
            structured = StructuredOutletController(config.outlet, tunables=tunables, sleep=sleep)
        return cls(
            config,
            probe=probe,
            management=ManagementController(config.management, timeout=tunables.ipmi_timeout),
            terminal=TerminalOutletController(config.outlet, dialect=config.dialect, session=session,
                                              session_timeout=tunables.session_timeout, sleep=sleep),
            structured=structured,
        )

    def run(self) -> RecoveryResult:
        attempt = RecoveryAttempt()
        target = self.config.target

        attempt.enter(Stage.START, f"Checking {target.address} (ping + ssh login prompt)")
        if self.probe.is_answering(target.address, target.ssh_user):
            attempt.enter(Stage.LOCAL_OK, f"{target.address} is answering, no remediation needed")
            return RecoveryResult(Disposition.HEALTHY, attempt)

        unreachable = ProbeUnreachable(f"{target.address} is not answering", host=target.address)
        attempt.enter(Stage.MGMT_PROBE, f"{unreachable}; probing management controller "
                                        f"{self.config.management.address}")
        try:
            self._escalate_management(attempt)
        except (ManagementUnreachable, ManagementCycleFailed, RecoveryTimeout) as e:
            attempt.enter(Stage.OUTLET_FALLBACK, f"{e}; falling back to PDU outlet {self.config.outlet.label!r}")
        else:
            attempt.enter(Stage.RECOVERED, f"{target.address} recovered after management power cycle")
            return RecoveryResult(Disposition.RECOVERED, attempt)

        try:
            self._escalate_outlet(attempt)
        except OutletCycleFailed as e:
            attempt.enter(Stage.FAILED, f"All outlet power paths failed: {e}")
            return RecoveryResult(Disposition.POWER_PATH_FAILED, attempt, e)

        attempt.enter(Stage.OUTLET_WAIT, f"Outlet cycled, waiting up to {self.config.tunables.recovery_window}s "
                                         f"for {target.address}")
        try:
            self._await_recovery()
        except RecoveryTimeout as e:
            attempt.enter(Stage.FAILED, str(e))
            return RecoveryResult(Disposition.RECOVERY_TIMEOUT, attempt, e)
        attempt.enter(Stage.RECOVERED, f"{target.address} recovered after outlet power cycle")
        return RecoveryResult(Disposition.RECOVERED, attempt)

    def _escalate_management(self, attempt: RecoveryAttempt) -> None:
        mgmt = self.config.management
        if not self.probe.is_live(mgmt.address):
            attempt.management_skipped = True
            raise ManagementUnreachable(f"Management controller {mgmt.address} is unreachable, "
                                        f"skipping management power cycle", host=mgmt.address)
        self.management.cycle_power(self.config.tunables.off_wait)
        attempt.management_cycled = True
        attempt.enter(Stage.MGMT_CYCLED, f"Management power cycle sent to {mgmt.address}")
        attempt.enter(Stage.MGMT_WAIT, f"Waiting up to {self.config.tunables.recovery_window}s "
                                       f"for {self.config.target.address}")
        self._await_recovery()

    def _escalate_outlet(self, attempt: RecoveryAttempt) -> None:
        off_wait = self.config.tunables.off_wait
        if self.structured is not None:
            attempt.structured_attempted = True
            attempt.enter(Stage.OUTLET_STRUCTURED, f"Power cycling outlet {self.config.outlet.label!r} over SNMP")
            try:
                self.structured.cycle_power(off_wait)
                return
            except OutletError as e:
                logger.warning(f"SNMP outlet cycle failed, trying the PDU CLI: {e}")
        attempt.terminal_attempted = True
        attempt.enter(Stage.OUTLET_TERMINAL, f"Power cycling outlet {self.config.outlet.label!r} via PDU CLI")
        self.terminal.cycle_power(off_wait)

    def _await_recovery(self) -> None:
        target = self.config.target
        tunables = self.config.tunables
        if not self.probe.wait_for_recovery(target.address, target.ssh_user,
                                            tunables.recovery_window, tunables.poll_interval):
            raise RecoveryTimeout(f"{target.address} did not answer within {tunables.recovery_window}s",
                                  host=target.address)

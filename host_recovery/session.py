"""
Terminal Session Driver

Drives scripted conversations with interactive programs that have no
programmatic API (ssh password prompts, PDU command lines). A conversation is
described as data: a SessionScript is a list of steps, each step an ordered
list of rules, each rule a regex plus what to do when it matches.
"""

import logging
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

import pexpect

from host_recovery.config import SESSION_TIMEOUT, OutletCliDialect

logger = logging.getLogger(__name__)

# Constants
READ_SIZE = 4096
POLL_INTERVAL = 0.1
FAREWELL_TIMEOUT = 5
MASK = '********'

HOST_KEY_PATTERN = r'(?i)are you sure you want to continue connecting'
PASSWORD_PATTERN = r'(?i)password:'
DENIED_PATTERN = r'(?i)(permission|access) denied'
REFUSED_PATTERN = r'(?i)connection refused'
UNREACHABLE_PATTERN = (r'(?i)(no route to host|connection timed out|could not resolve hostname'
                       r'|connection closed by|connection reset by)')


class Action(Enum):
    """What a matched rule does"""
    RESPOND = 'respond'  # send, stay on the current step
    ADVANCE = 'advance'  # send, move to the next step
    SUCCEED = 'succeed'
    FAIL = 'fail'


class Classification(Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'


@dataclass(frozen=True)
class Rule:
    """A pattern to watch for and the action to take when it shows up"""
    name: str
    pattern: str
    action: Action
    send: Optional[str] = None
    secret: Optional[str] = None

    def __post_init__(self):
        if self.send is not None and self.secret is not None:
            raise ValueError(f"Rule '{self.name}' cannot send both literal text and a secret")
        if self.action in (Action.SUCCEED, Action.FAIL) and (self.send is not None or self.secret is not None):
            raise ValueError(f"Rule '{self.name}' ends the session and cannot send anything")
        re.compile(self.pattern)

    def search(self, text: str):
        return re.search(self.pattern, text)


@dataclass(frozen=True)
class Step:
    name: str
    rules: Tuple[Rule, ...]
    timeout: float = SESSION_TIMEOUT


@dataclass(frozen=True)
class SessionScript:
    """
    An immutable conversation description.

    ``farewell`` is sent after a successful conversation (e.g. ``exit``); it
    is best effort and never changes the outcome.
    """
    name: str
    steps: Tuple[Step, ...]
    farewell: Optional[str] = None

    def __post_init__(self):
        if not self.steps:
            raise ValueError(f"Script '{self.name}' has no steps")
        for rule in self.steps[-1].rules:
            if rule.action is Action.ADVANCE:
                raise ValueError(f"Rule '{rule.name}' advances past the last step of script '{self.name}'")

    @property
    def secrets_needed(self) -> List[str]:
        return [rule.secret for step in self.steps for rule in step.rules if rule.secret is not None]

    def with_timeout(self, timeout: float) -> 'SessionScript':
        """Return a copy of the script with every step using the given timeout"""
        return replace(self, steps=tuple(replace(step, timeout=timeout) for step in self.steps))


@dataclass(frozen=True)
class SessionOutcome:
    classification: Classification
    matched_rule: Optional[str]
    reason: str
    transcript: str = ''

    @property
    def ok(self) -> bool:
        return self.classification is Classification.SUCCESS


def ssh_command(username: str, host: str, connect_timeout: int = SESSION_TIMEOUT) -> List[str]:
    """Build an ssh command line that always ends up at a password prompt rather than using keys"""
    return [
        'ssh',
        '-o', f'ConnectTimeout={connect_timeout}',
        '-o', 'PubkeyAuthentication=no',
        '-o', 'PreferredAuthentications=keyboard-interactive,password',
        '-o', 'NumberOfPasswordPrompts=1',
        f'{username}@{host}',
    ]


class TerminalSession:
    """Runs a SessionScript against a spawned interactive program"""

    def __init__(self, spawn: Callable = pexpect.spawn, poll_interval: float = POLL_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        self._spawn = spawn
        self.poll_interval = poll_interval
        self._clock = clock

    def run(self, argv: Sequence[str], script: SessionScript,
            secrets: Optional[Mapping[str, str]] = None) -> SessionOutcome:
        """
        Spawn ``argv`` and play ``script`` against it.

        Args:
            argv: Program and arguments to spawn
            script: The conversation to hold
            secrets: Values for rules that send a named secret

        Returns:
            SessionOutcome describing which rule ended the conversation, or why none did
        """
        secrets = dict(secrets or {})
        missing = [key for key in script.secrets_needed if key not in secrets]
        if missing:
            raise ValueError(f"Script '{script.name}' needs secret(s): {', '.join(missing)}")

        logger.debug(f"Starting session '{script.name}': {' '.join(argv)}")
        try:
            child = self._spawn(argv[0], list(argv[1:]), encoding='utf-8', codec_errors='replace', timeout=None)
        except pexpect.ExceptionPexpect as e:
            return SessionOutcome(Classification.FAILURE, None, f"Could not start {argv[0]}: {e}")

        transcript = []
        try:
            outcome = self._converse(child, script, secrets, transcript)
            if outcome.ok and script.farewell:
                self._say_farewell(child, script.farewell, transcript)
            logger.debug(f"Session '{script.name}' finished: {outcome.classification.value} ({outcome.reason})")
            return replace(outcome, transcript=self._mask(''.join(transcript), secrets))
        finally:
            self._close(child)

    def _converse(self, child, script: SessionScript, secrets: Mapping[str, str], transcript: List[str]) -> SessionOutcome:
        index = 0
        step = script.steps[index]
        buffer = ''
        deadline = self._clock() + step.timeout
        while True:
            rule, match = self._first_match(step, buffer)
            if rule is not None:
                buffer = buffer[match.end():]
                logger.debug(f"[{script.name}:{step.name}] matched rule '{rule.name}'")
                if rule.action is Action.SUCCEED:
                    return SessionOutcome(Classification.SUCCESS, rule.name, f"'{rule.name}' seen in step '{step.name}'")
                if rule.action is Action.FAIL:
                    return SessionOutcome(Classification.FAILURE, rule.name, f"'{rule.name}' seen in step '{step.name}'")
                try:
                    self._send(child, rule, secrets)
                except (OSError, pexpect.EOF) as e:
                    return SessionOutcome(Classification.FAILURE, None,
                                          f"Session ended while sending in step '{step.name}': {e}")
                if rule.action is Action.ADVANCE:
                    # The next step only sees output produced after the send
                    buffer = ''
                    index += 1
                    step = script.steps[index]
                deadline = self._clock() + step.timeout
                continue

            remaining = deadline - self._clock()
            if remaining <= 0:
                return SessionOutcome(Classification.FAILURE, None,
                                      f"Timed out after {step.timeout}s in step '{step.name}'")
            try:
                chunk = child.read_nonblocking(READ_SIZE, timeout=min(remaining, self.poll_interval))
            except pexpect.TIMEOUT:
                continue
            except pexpect.EOF:
                return SessionOutcome(Classification.FAILURE, None, f"Session ended during step '{step.name}'")
            logger.debug(f"[SHELL READ] {self._mask(chunk, secrets)!r}")
            transcript.append(chunk)
            buffer += chunk

    @staticmethod
    def _first_match(step: Step, buffer: str):
        # Declared order decides, not position in the buffer
        for rule in step.rules:
            match = rule.search(buffer)
            if match:
                return rule, match
        return None, None

    @staticmethod
    def _send(child, rule: Rule, secrets: Mapping[str, str]) -> None:
        if rule.secret is not None:
            logger.debug(f"[SHELL SEND] {MASK}")
            child.sendline(secrets[rule.secret])
        else:
            logger.debug(f"[SHELL SEND] {rule.send!r}")
            child.sendline(rule.send or '')

    def _say_farewell(self, child, farewell: str, transcript: List[str]) -> None:
        deadline = self._clock() + FAREWELL_TIMEOUT
        try:
            child.sendline(farewell)
            while self._clock() < deadline:
                try:
                    transcript.append(child.read_nonblocking(READ_SIZE, timeout=self.poll_interval))
                except pexpect.TIMEOUT:
                    continue
        except (pexpect.EOF, OSError):
            return
        logger.debug(f"Session still open {FAREWELL_TIMEOUT}s after '{farewell}', closing it")

    @staticmethod
    def _close(child) -> None:
        try:
            child.close(force=True)
        except (OSError, pexpect.ExceptionPexpect) as e:
            logger.warning(f"Could not terminate session process: {e}")

    @staticmethod
    def _mask(text: str, secrets: Mapping[str, str]) -> str:
        for value in secrets.values():
            if value:
                text = text.replace(value, MASK)
        return text


# Reaching a password prompt, or having a password refused, both mean sshd is
# up and evaluating credentials. No authentication is attempted.
LOGIN_DETECTION_SCRIPT = SessionScript(
    name='login-detection',
    steps=(
        Step('login', (
            Rule('host-key', HOST_KEY_PATTERN, Action.RESPOND, send='yes'),
            Rule('password-prompt', PASSWORD_PATTERN, Action.SUCCEED),
            Rule('access-denied', DENIED_PATTERN, Action.SUCCEED),
            Rule('connection-refused', REFUSED_PATTERN, Action.FAIL),
            Rule('unreachable', UNREACHABLE_PATTERN, Action.FAIL),
        )),
    ),
)


def outlet_command_script(dialect: OutletCliDialect, command: str, timeout: float = SESSION_TIMEOUT) -> SessionScript:
    """
    Build the conversation that logs into the PDU CLI and issues one outlet command.

    The CLI password is sent from the ``password`` secret.
    """
    prompt = re.escape(dialect.prompt)
    result_rules = [Rule('command-prompt', prompt, Action.SUCCEED)]
    if dialect.success_marker:
        result_rules.insert(0, Rule('success-marker', re.escape(dialect.success_marker), Action.SUCCEED))
    return SessionScript(
        name='outlet-command',
        steps=(
            Step('login', (
                Rule('host-key', HOST_KEY_PATTERN, Action.RESPOND, send='yes'),
                Rule('password-prompt', PASSWORD_PATTERN, Action.ADVANCE, secret='password'),
            ), timeout),
            Step('prompt', (
                Rule('access-denied', DENIED_PATTERN, Action.FAIL),
                Rule('password-rejected', PASSWORD_PATTERN, Action.FAIL),
                Rule('command-prompt', prompt, Action.ADVANCE, send=command),
            ), timeout),
            Step('result', tuple(result_rules), timeout),
        ),
        farewell=dialect.exit_command or None,
    )

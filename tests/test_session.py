import pexpect
import pytest

from host_recovery.config import OutletCliDialect
from host_recovery.session import (
    LOGIN_DETECTION_SCRIPT, MASK, Action, Classification, Rule, SessionScript, Step,
    TerminalSession, outlet_command_script, ssh_command,
)

HANG = object()


class FakeChild:
    """Stands in for a pexpect.spawn child; plays back output chunks in order"""

    def __init__(self, chunks, clock=None, hang=False, send_error=None):
        self.chunks = list(chunks)
        self.clock = clock
        self.hang = hang
        self.send_error = send_error
        self.sent = []
        self.closed = False
        self.force = None

    def read_nonblocking(self, size, timeout=None):
        if not self.chunks:
            if self.hang:
                return self._timeout(timeout)
            raise pexpect.EOF('end of stream')
        item = self.chunks.pop(0)
        if item is HANG:
            return self._timeout(timeout)
        if isinstance(item, Exception):
            raise item
        return item

    def _timeout(self, timeout):
        if self.clock is not None:
            self.clock.now += timeout
        raise pexpect.TIMEOUT('no output')

    def sendline(self, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    def close(self, force=False):
        self.closed = True
        self.force = force


class FakeSpawn:
    def __init__(self, child):
        self.child = child
        self.calls = []

    def __call__(self, command, args, **kwargs):
        self.calls.append([command] + list(args))
        return self.child


def make_session(child, clock):
    spawn = FakeSpawn(child)
    return TerminalSession(spawn=spawn, clock=clock), spawn


def test_login_detection_confirms_host_key_then_sees_password_prompt(clock):
    child = FakeChild([
        "The authenticity of host 'web01' can't be established.\r\n"
        "Are you sure you want to continue connecting (yes/no/[fingerprint])? ",
        "root@web01's password: ",
    ])
    session, spawn = make_session(child, clock)

    outcome = session.run(ssh_command('root', 'web01'), LOGIN_DETECTION_SCRIPT)

    assert outcome.ok
    assert outcome.matched_rule == 'password-prompt'
    assert child.sent == ['yes']
    assert spawn.calls[0][0] == 'ssh'
    assert spawn.calls[0][-1] == 'root@web01'
    assert child.closed and child.force is True


def test_login_detection_counts_access_denied_as_answering(clock):
    child = FakeChild(["root@web01: Permission denied (publickey,password).\r\n"])
    session, _ = make_session(child, clock)

    outcome = session.run(ssh_command('root', 'web01'), LOGIN_DETECTION_SCRIPT)

    assert outcome.classification is Classification.SUCCESS
    assert outcome.matched_rule == 'access-denied'
    assert child.sent == []


def test_login_detection_fails_on_connection_refused(clock):
    child = FakeChild(["ssh: connect to host web01 port 22: Connection refused\r\n"])
    session, _ = make_session(child, clock)

    outcome = session.run(ssh_command('root', 'web01'), LOGIN_DETECTION_SCRIPT)

    assert not outcome.ok
    assert outcome.matched_rule == 'connection-refused'
    assert child.closed


def test_login_detection_fails_when_stream_ends_without_a_match(clock):
    child = FakeChild(["Welcome\r\n"])
    session, _ = make_session(child, clock)

    outcome = session.run(ssh_command('root', 'web01'), LOGIN_DETECTION_SCRIPT)

    assert outcome.classification is Classification.FAILURE
    assert outcome.matched_rule is None
    assert 'ended' in outcome.reason
    assert child.closed


def test_step_timeout_fails_and_closes_child(clock):
    child = FakeChild([], clock=clock, hang=True)
    session, _ = make_session(child, clock)

    outcome = session.run(ssh_command('root', 'web01'), LOGIN_DETECTION_SCRIPT.with_timeout(3))

    assert not outcome.ok
    assert outcome.matched_rule is None
    assert 'Timed out' in outcome.reason
    assert clock.now >= 3
    assert child.closed


def test_prompt_split_across_reads_still_matches(clock):
    child = FakeChild(["root@web01's pass", HANG, "word: "], clock=clock)
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'root@web01'], LOGIN_DETECTION_SCRIPT)

    assert outcome.matched_rule == 'password-prompt'


def test_rules_are_tried_in_declared_order_not_buffer_position(clock):
    script = SessionScript('order', (
        Step('only', (
            Rule('second-in-text', r'beta', Action.SUCCEED),
            Rule('first-in-text', r'alpha', Action.FAIL),
        )),
    ))
    child = FakeChild(["alpha beta"])
    session, _ = make_session(child, clock)

    outcome = session.run(['prog'], script)

    assert outcome.ok
    assert outcome.matched_rule == 'second-in-text'


def test_outlet_script_logs_in_issues_command_and_says_goodbye(clock):
    dialect = OutletCliDialect()
    script = outlet_command_script(dialect, 'olOff "web01"')
    child = FakeChild([
        "apc@10.0.20.5's password: ",
        "\r\nSchneider Electric Network Management Card\r\napc>",
        'olOff "web01"\r\nE000: Success\r\n\r\napc>',
    ])
    session, _ = make_session(child, clock)

    outcome = session.run(ssh_command('apc', '10.0.20.5'), script, secrets={'password': 's3cret'})

    assert outcome.ok
    assert outcome.matched_rule == 'success-marker'
    assert child.sent == ['s3cret', 'olOff "web01"', 'exit']
    assert child.closed


def test_outlet_script_accepts_returning_prompt_without_marker(clock):
    script = outlet_command_script(OutletCliDialect(success_marker=''), 'olOn "web01"')
    child = FakeChild(["password: ", "apc>", 'olOn "web01"\r\napc>'])
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 'x'})

    assert outcome.ok
    assert outcome.matched_rule == 'command-prompt'


def test_outlet_script_ignores_prompts_printed_before_the_command(clock):
    script = outlet_command_script(OutletCliDialect(success_marker=''), 'olOff "web01"', timeout=5)
    child = FakeChild(["password: ", "\r\napc>\r\napc>"], clock=clock, hang=True)
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 'x'})

    assert not outcome.ok
    assert "step 'result'" in outcome.reason
    assert child.sent == ['x', 'olOff "web01"']


def test_outlet_script_waits_for_prompt_after_the_command(clock):
    script = outlet_command_script(OutletCliDialect(success_marker=''), 'olOff "web01"')
    child = FakeChild(["password: ", "\r\napc>\r\napc>", HANG, 'olOff "web01"\r\n', 'apc>'], clock=clock)
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 'x'})

    assert outcome.ok
    assert outcome.matched_rule == 'command-prompt'
    assert child.chunks == []


def test_send_to_dead_session_is_a_failed_outcome(clock):
    child = FakeChild(["password: "], send_error=OSError(5, 'Input/output error'))
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], outlet_command_script(OutletCliDialect(), 'olOff "web01"'),
                          secrets={'password': 'x'})

    assert outcome.classification is Classification.FAILURE
    assert outcome.matched_rule is None
    assert "while sending in step 'login'" in outcome.reason
    assert child.closed


def test_outlet_script_fails_on_rejected_password(clock):
    script = outlet_command_script(OutletCliDialect(), 'olOff "web01"')
    child = FakeChild(["password: ", "Permission denied, please try again.\r\n"])
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 'wrong'})

    assert not outcome.ok
    assert outcome.matched_rule == 'access-denied'
    assert child.sent == ['wrong']


def test_outlet_script_fails_when_prompt_never_appears(clock):
    script = outlet_command_script(OutletCliDialect(), 'olOff "web01"', timeout=5)
    child = FakeChild(["password: "], clock=clock, hang=True)
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 'x'})

    assert not outcome.ok
    assert "step 'prompt'" in outcome.reason
    assert 'olOff "web01"' not in child.sent


def test_secrets_are_masked_in_transcript(clock):
    script = outlet_command_script(OutletCliDialect(), 'olOff "web01"')
    child = FakeChild(["password: ", "s3cret\r\napc>", "E000: Success\r\napc>"])
    session, _ = make_session(child, clock)

    outcome = session.run(['ssh', 'apc@pdu'], script, secrets={'password': 's3cret'})

    assert outcome.ok
    assert 's3cret' not in outcome.transcript
    assert MASK in outcome.transcript


def test_child_is_closed_when_reading_crashes(clock):
    child = FakeChild([RuntimeError('pty went away')])
    session, _ = make_session(child, clock)

    with pytest.raises(RuntimeError):
        session.run(['ssh', 'root@web01'], LOGIN_DETECTION_SCRIPT)
    assert child.closed


def test_spawn_failure_is_a_failed_outcome(clock):
    def spawn(command, args, **kwargs):
        raise pexpect.ExceptionPexpect('The command was not found or was not executable: ssh.')

    session = TerminalSession(spawn=spawn, clock=clock)

    outcome = session.run(['ssh', 'root@web01'], LOGIN_DETECTION_SCRIPT)

    assert not outcome.ok
    assert 'Could not start ssh' in outcome.reason


def test_missing_secret_is_rejected_before_spawning(clock):
    child = FakeChild([])
    session, spawn = make_session(child, clock)

    with pytest.raises(ValueError):
        session.run(['ssh', 'apc@pdu'], outlet_command_script(OutletCliDialect(), 'olOff "x"'))
    assert spawn.calls == []


def test_script_cannot_advance_past_last_step():
    with pytest.raises(ValueError):
        SessionScript('bad', (Step('only', (Rule('go', 'x', Action.ADVANCE, send='y'),)),))


def test_terminal_rules_cannot_send():
    with pytest.raises(ValueError):
        Rule('done', 'x', Action.SUCCEED, send='y')

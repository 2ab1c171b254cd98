"""
Reachability Probe

A host counts as answering when it replies to ping and its ssh daemon offers
a password prompt (or refuses a password), both in the same poll.
"""

import logging
import subprocess
import time
from typing import Callable, Optional

from host_recovery.config import PING_COUNT, PING_TIMEOUT, SESSION_TIMEOUT
from host_recovery.session import LOGIN_DETECTION_SCRIPT, TerminalSession, ssh_command

logger = logging.getLogger(__name__)


class ReachabilityProbe:
    """Liveness and login-prompt checks against a single address"""

    def __init__(self, session: Optional[TerminalSession] = None,
                 ping_count: int = PING_COUNT,
                 ping_timeout: int = PING_TIMEOUT,
                 session_timeout: int = SESSION_TIMEOUT,
                 runner: Callable = subprocess.run,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.session = session or TerminalSession()
        self.ping_count = ping_count
        self.ping_timeout = ping_timeout
        self.session_timeout = session_timeout
        self._run = runner
        self._clock = clock
        self._sleep = sleep
        self._login_script = LOGIN_DETECTION_SCRIPT.with_timeout(session_timeout)

    def is_live(self, address: str) -> bool:
        """Ping the address a bounded number of times"""
        cmd = ['ping', '-c', str(self.ping_count), '-W', str(self.ping_timeout), address]
        try:
            result = self._run(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.ping_count * self.ping_timeout + 5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Ping of {address} could not complete: {e}")
            return False
        live = result.returncode == 0
        logger.debug(f"Ping {address}: {'reply' if live else 'no reply'}")
        return live

    def answers_login(self, address: str, ssh_user: str) -> bool:
        """Check that sshd on the address gets as far as asking for (or refusing) a password"""
        outcome = self.session.run(ssh_command(ssh_user, address, self.session_timeout), self._login_script)
        if outcome.ok:
            logger.debug(f"SSH on {address} is answering ({outcome.matched_rule})")
        else:
            logger.debug(f"SSH on {address} is not answering: {outcome.reason}")
        return outcome.ok

    def is_answering(self, address: str, ssh_user: str) -> bool:
        """One poll: both checks must pass now"""
        if not self.is_live(address):
            return False
        return self.answers_login(address, ssh_user)

    def wait_for_recovery(self, address: str, ssh_user: str, total_timeout: float, poll_interval: float) -> bool:
        """
        Poll until the host answers or the window closes.

        Args:
            address: Host to poll
            ssh_user: Username for the login-prompt check
            total_timeout: Length of the wait window in seconds
            poll_interval: Seconds between polls

        Returns:
            True the first time a single poll sees both checks succeed
        """
        deadline = self._clock() + total_timeout
        poll = 0
        while True:
            poll += 1
            if self.is_answering(address, ssh_user):
                logger.info(f"{address} is answering again (poll {poll})")
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.info(f"{address} did not answer within {total_timeout}s ({poll} polls)")
                return False
            logger.debug(f"{address} not answering yet (poll {poll}), {int(remaining)}s left")
            self._sleep(min(poll_interval, remaining))

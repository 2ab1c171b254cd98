"""
Power controllers: the ways this tool can power cycle the target.

- ManagementController: one-shot ``ipmitool chassis power cycle``
- StructuredOutletController: PDU outlet OFF/ON written over SNMP by index
- TerminalOutletController: PDU outlet OFF/ON typed into the PDU's ssh CLI by label

Every controller raises a RecoveryError subclass on failure and returns
nothing on success. Nothing is retried here.
"""

import logging
import os
import subprocess
import time
from typing import Callable, Optional

from host_recovery.config import (
    IPMI_TIMEOUT, SESSION_TIMEOUT, ManagementEndpoint, OutletCliDialect, OutletEndpoint, Tunables,
)
from host_recovery.errors import ManagementCycleFailed, OutletCycleFailed, OutletError, SnmpError
from host_recovery.outlets import Outlet, OutletCommand, SnmpOutletTable
from host_recovery.session import TerminalSession, outlet_command_script, ssh_command

logger = logging.getLogger(__name__)


class PowerController:
    """Interface for anything that can power cycle the target"""

    def cycle_power(self, off_wait: int) -> None:
        raise NotImplementedError


class ManagementController(PowerController):
    """Power cycles the target through its IPMI management controller"""

    def __init__(self, endpoint: ManagementEndpoint, timeout: int = IPMI_TIMEOUT, runner: Callable = subprocess.run):
        self.endpoint = endpoint
        self.timeout = timeout
        self._run = runner

    def __repr__(self) -> str:
        return f"ManagementController(address={self.endpoint.address}, username={self.endpoint.username})"

    def cycle_power(self, off_wait: int = 0) -> None:
        """
        Issue ``chassis power cycle``. The controller handles the off period
        itself, so ``off_wait`` is not used.

        Raises:
            ManagementCycleFailed: ipmitool missing, timed out or exited non-zero
        """
        address = self.endpoint.address
        # -E reads the password from IPMI_PASSWORD so it stays off the command line
        cmd = ['ipmitool', '-I', 'lanplus', '-H', address, '-U', self.endpoint.username, '-E',
               'chassis', 'power', 'cycle']
        env = dict(os.environ, IPMI_PASSWORD=self.endpoint.secret)
        logger.info(f"Sending IPMI power cycle to {address}")
        try:
            result = self._run(cmd, capture_output=True, text=True, timeout=self.timeout, env=env, check=False)
        except subprocess.TimeoutExpired:
            raise ManagementCycleFailed(f"IPMI power cycle on {address} timed out after {self.timeout}s", host=address)
        except OSError as e:
            raise ManagementCycleFailed(f"Could not run ipmitool against {address}: {e}", host=address)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or '').strip()
            raise ManagementCycleFailed(
                f"IPMI power cycle on {address} failed (exit {result.returncode}): {detail}", host=address)
        logger.info(f"IPMI power cycle command accepted by {address}")


class OutletController(PowerController):
    """Power cycles the target's PDU outlet: OFF, wait, ON"""

    def __init__(self, endpoint: OutletEndpoint, sleep: Callable[[float], None] = time.sleep):
        self.endpoint = endpoint
        self._sleep = sleep

    def power_off(self) -> None:
        raise NotImplementedError

    def power_on(self) -> None:
        raise NotImplementedError

    def cycle_power(self, off_wait: int) -> None:
        label = self.endpoint.label
        address = self.endpoint.address
        self.power_off()
        logger.info(f"Waiting {off_wait} seconds before powering on outlet '{label}' on PDU {address}")
        self._sleep(off_wait)
        try:
            self.power_on()
        except OutletError:
            logger.critical(f"Outlet '{label}' on PDU {address} was switched OFF but not back ON; "
                            f"the host may be left powered off")
            raise


class StructuredOutletController(OutletController):
    """Outlet control over SNMP, using the write community as the secret"""

    def __init__(self, endpoint: OutletEndpoint, table: Optional[SnmpOutletTable] = None,
                 tunables: Optional[Tunables] = None, sleep: Callable[[float], None] = time.sleep):
        super().__init__(endpoint, sleep)
        if table is None:
            if not endpoint.has_write_secret:
                raise ValueError("SNMP outlet control needs a write community")
            tunables = tunables or Tunables()
            table = SnmpOutletTable(endpoint.address, endpoint.write_secret, port=tunables.snmp_port,
                                    timeout=tunables.snmp_timeout, retries=tunables.snmp_retries)
        self.table = table
        self.outlet = Outlet(endpoint.label)

    def __repr__(self) -> str:
        return f"StructuredOutletController(address={self.endpoint.address}, outlet={self.outlet!r})"

    def _write(self, command: OutletCommand) -> None:
        address = self.endpoint.address
        try:
            # OutletNotFound is left to propagate as is
            index = self.outlet.resolve(self.table)
            self.table.write_command(index, command)
        except SnmpError as e:
            raise OutletCycleFailed(str(e), host=address) from e
        logger.info(f"SNMP {command.name} sent to outlet {index} ('{self.outlet.label}') on PDU {address}")

    def power_off(self) -> None:
        self._write(OutletCommand.IMMEDIATE_OFF)

    def power_on(self) -> None:
        self._write(OutletCommand.IMMEDIATE_ON)


class TerminalOutletController(OutletController):
    """Outlet control by typing commands into the PDU's ssh command line"""

    def __init__(self, endpoint: OutletEndpoint, dialect: Optional[OutletCliDialect] = None,
                 session: Optional[TerminalSession] = None, session_timeout: int = SESSION_TIMEOUT,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(endpoint, sleep)
        self.dialect = dialect or OutletCliDialect()
        self.session = session or TerminalSession()
        self.session_timeout = session_timeout

    def __repr__(self) -> str:
        return f"TerminalOutletController(address={self.endpoint.address}, username={self.endpoint.cli_username})"

    @property
    def cli_label(self) -> str:
        return self.endpoint.label.replace('"', '').strip()

    def _execute(self, template: str, state: str) -> None:
        address = self.endpoint.address
        command = template.format(label=self.cli_label)
        script = outlet_command_script(self.dialect, command, timeout=self.session_timeout)
        outcome = self.session.run(
            ssh_command(self.endpoint.cli_username, address, self.session_timeout),
            script,
            secrets={'password': self.endpoint.cli_secret},
        )
        if not outcome.ok:
            raise OutletCycleFailed(
                f"Powering {state} outlet '{self.endpoint.label}' via CLI on PDU {address} failed: {outcome.reason}",
                host=address)
        logger.info(f"Powered {state} outlet '{self.endpoint.label}' via CLI on PDU {address}")

    def power_off(self) -> None:
        self._execute(self.dialect.off_command, 'off')

    def power_on(self) -> None:
        self._execute(self.dialect.on_command, 'on')

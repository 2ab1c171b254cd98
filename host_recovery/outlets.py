"""
Outlet label resolution and the SNMP outlet table of APC rack PDUs.

The PDU keeps an ordered table of outlet names; the operator knows outlets by
label. Resolution maps one to the other so the outlet command can be written
by index.
"""

import asyncio
import logging
from enum import IntEnum
from typing import List, Optional, Tuple

from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData, ContextData, ObjectIdentity, ObjectType, SnmpEngine,
    UdpTransportTarget, set_cmd, walk_cmd,
)
from pysnmp.proto.rfc1902 import Integer

from host_recovery.config import SNMP_PORT, SNMP_RETRIES, SNMP_TIMEOUT
from host_recovery.errors import OutletNotFound, SnmpError

logger = logging.getLogger(__name__)

# PowerNet-MIB rPDUOutletControlTable
OUTLET_NAME_OID = '1.3.6.1.4.1.318.1.1.12.3.3.1.1.2'  # rPDUOutletControlOutletName
OUTLET_COMMAND_OID = '1.3.6.1.4.1.318.1.1.12.3.3.1.1.4'  # rPDUOutletControlOutletCommand

_TRIM = ' \t\r\n"\''


class OutletCommand(IntEnum):
    """Values accepted by rPDUOutletControlOutletCommand"""
    IMMEDIATE_ON = 1
    IMMEDIATE_OFF = 2
    IMMEDIATE_REBOOT = 3


def normalize_label(text: str) -> str:
    """Strip surrounding whitespace and quotes, then case-fold"""
    return str(text).strip(_TRIM).casefold()


def resolve_index(table, label: str) -> int:
    """
    Find the index of the outlet whose name matches ``label``.

    The first match in table order wins, so duplicate names resolve to the
    lowest index.

    Raises:
        OutletNotFound: No outlet name matches
    """
    wanted = normalize_label(label)
    for index, name in table.outlet_names():
        if normalize_label(name) == wanted:
            logger.debug(f"Outlet '{label}' is index {index} ('{name}')")
            return index
    raise OutletNotFound(label, host=getattr(table, 'address', None))


class Outlet:
    """An outlet known by label whose index is looked up at most once"""

    def __init__(self, label: str):
        self.label = label
        self._index: Optional[int] = None

    def __repr__(self) -> str:
        return f"Outlet(label={self.label!r}, index={self._index})"

    @property
    def index(self) -> Optional[int]:
        return self._index

    def resolve(self, table) -> int:
        if self._index is None:
            self._index = resolve_index(table, self.label)
        return self._index


class SnmpOutletTable:
    """Reads outlet names and writes outlet commands over SNMP v2c"""

    def __init__(self, address: str, community: str, port: int = SNMP_PORT,
                 timeout: int = SNMP_TIMEOUT, retries: int = SNMP_RETRIES):
        self.address = address
        self.community = community
        self.port = port
        self.timeout = timeout
        self.retries = retries

    def __repr__(self) -> str:
        return f"SnmpOutletTable(address={self.address}, port={self.port})"

    def outlet_names(self) -> List[Tuple[int, str]]:
        """Return ``(index, name)`` for every outlet, in table order"""
        rows = self._call(self._walk(OUTLET_NAME_OID))
        logger.debug(f"Read {len(rows)} outlet names from {self.address}")
        return rows

    def write_command(self, index: int, command: OutletCommand) -> None:
        """Set the outlet command for one outlet"""
        logger.debug(f"SNMP SET {OUTLET_COMMAND_OID}.{index} = {command.name} on {self.address}")
        self._call(self._set(f'{OUTLET_COMMAND_OID}.{index}', int(command)))

    def _call(self, coro):
        try:
            return asyncio.run(coro)
        except (PySnmpError, OSError) as e:
            raise SnmpError(f"SNMP request to {self.address} failed: {e}", host=self.address) from e

    async def _target(self):
        return await UdpTransportTarget.create((self.address, self.port), timeout=self.timeout, retries=self.retries)

    async def _walk(self, oid: str) -> List[Tuple[int, str]]:
        engine = SnmpEngine()
        rows = []
        try:
            async for error_indication, error_status, error_index, var_binds in walk_cmd(
                engine,
                CommunityData(self.community, mpModel=1),
                await self._target(),
                ContextData(),
                ObjectType(ObjectIdentity(oid)),
                lexicographicMode=False,
            ):
                self._check(error_indication, error_status, error_index, f"walk {oid}")
                for name, value in var_binds:
                    rows.append((int(str(name).rsplit('.', 1)[-1]), str(value)))
        finally:
            engine.close_dispatcher()
        return rows

    async def _set(self, oid: str, value: int) -> None:
        engine = SnmpEngine()
        try:
            error_indication, error_status, error_index, _ = await set_cmd(
                engine,
                CommunityData(self.community, mpModel=1),
                await self._target(),
                ContextData(),
                ObjectType(ObjectIdentity(oid), Integer(value)),
            )
        finally:
            engine.close_dispatcher()
        self._check(error_indication, error_status, error_index, f"set {oid}")

    def _check(self, error_indication, error_status, error_index, what: str) -> None:
        if error_indication:
            raise SnmpError(f"SNMP {what} on {self.address} failed: {error_indication}", host=self.address)
        if error_status:
            raise SnmpError(f"SNMP {what} on {self.address} failed: {error_status.prettyPrint()} at {error_index}",
                            host=self.address)

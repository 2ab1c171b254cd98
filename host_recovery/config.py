"""
Run configuration for host recovery.

Everything the operator supplies (target, management controller, PDU outlet)
is gathered once, from an optional YAML file and interactive prompts, into an
immutable RecoveryConfig that is passed into the orchestrator.
"""

import getpass
import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, Optional

import yaml

from host_recovery.errors import ConfigError

logger = logging.getLogger(__name__)

# Constants
CONFIG_FILE = 'config.yaml'
OFF_WAIT = 60
RECOVERY_WINDOW = 600
POLL_INTERVAL = 20
PING_COUNT = 2
PING_TIMEOUT = 2
SESSION_TIMEOUT = 10
IPMI_TIMEOUT = 30
SNMP_PORT = 161
SNMP_TIMEOUT = 5
SNMP_RETRIES = 2


@dataclass(frozen=True)
class Target:
    """The host being recovered"""
    address: str
    ssh_user: str


@dataclass(frozen=True)
class ManagementEndpoint:
    """Out-of-band management controller (IPMI) of the target"""
    address: str
    username: str
    secret: str = field(repr=False)


@dataclass(frozen=True)
class OutletEndpoint:
    """PDU feeding the target, with the label of the target's outlet"""
    address: str
    cli_username: str
    cli_secret: str = field(repr=False)
    label: str = ''
    write_secret: Optional[str] = field(default=None, repr=False)

    @property
    def has_write_secret(self) -> bool:
        return bool(self.write_secret)


@dataclass(frozen=True)
class Tunables:
    """Timing knobs; all values in seconds unless named otherwise"""
    off_wait: int = OFF_WAIT
    recovery_window: int = RECOVERY_WINDOW
    poll_interval: int = POLL_INTERVAL
    ping_count: int = PING_COUNT
    ping_timeout: int = PING_TIMEOUT
    session_timeout: int = SESSION_TIMEOUT
    ipmi_timeout: int = IPMI_TIMEOUT
    snmp_port: int = SNMP_PORT
    snmp_timeout: int = SNMP_TIMEOUT
    snmp_retries: int = SNMP_RETRIES


@dataclass(frozen=True)
class OutletCliDialect:
    """How to talk to the PDU command line (defaults match the APC rack PDU CLI)"""
    prompt: str = 'apc>'
    off_command: str = 'olOff "{label}"'
    on_command: str = 'olOn "{label}"'
    success_marker: str = 'E000: Success'
    exit_command: str = 'exit'


@dataclass(frozen=True)
class RecoveryConfig:
    """Everything a single recovery run needs"""
    target: Target
    management: ManagementEndpoint
    outlet: OutletEndpoint
    tunables: Tunables = field(default_factory=Tunables)
    dialect: OutletCliDialect = field(default_factory=OutletCliDialect)


def process_template_var(value: Any, defaults: Dict[str, Any], key: str = None) -> Any:
    """Process template variables in configuration, and use default if value is missing or empty"""
    if isinstance(value, str) and value.startswith('#{defaults.'):
        var_name = value.split('.', 1)[1].rstrip('}')
        return defaults.get(var_name, value)
    if (value is None or value == '') and key is not None and key in defaults:
        return defaults[key]
    return value


def load_config_file(path: str = CONFIG_FILE) -> Dict[str, Dict[str, Any]]:
    """
    Load the YAML configuration file, if there is one.

    Each section (target, management, outlet, tunables, cli) has its template
    variables resolved against the top-level ``defaults`` section. A missing
    file is not an error: everything will be prompted for instead.
    """
    if not os.path.exists(path):
        logger.debug(f"No configuration file at {path}, all values will be prompted for")
        return {}
    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
    except (IOError, yaml.YAMLError) as e:
        raise ConfigError(f"Error loading configuration from {path}: {e}")
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration in {path} must be a mapping")

    defaults = config.get('defaults') or {}
    sections = {}
    for name in ('target', 'management', 'outlet', 'tunables', 'cli'):
        section = config.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section '{name}' in {path} must be a mapping")
        sections[name] = {key: process_template_var(value, defaults, key) for key, value in section.items()}
    logger.info(f"Loaded configuration from {path}")
    return sections


def build_tunables(section: Optional[Dict[str, Any]] = None, overrides: Optional[Dict[str, Any]] = None) -> Tunables:
    """Build Tunables from a config section plus command-line overrides (None means not given)"""
    known = {f.name for f in fields(Tunables)}
    values = {}
    for source in (section or {}, overrides or {}):
        for key, value in source.items():
            if value is None:
                continue
            if key not in known:
                raise ConfigError(f"Unknown tunable '{key}'")
            try:
                values[key] = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"Tunable '{key}' must be a whole number of seconds, got {value!r}")
            if values[key] < 0:
                raise ConfigError(f"Tunable '{key}' must not be negative")
    tunables = Tunables(**values)
    if tunables.poll_interval <= 0:
        raise ConfigError("Tunable 'poll_interval' must be positive")
    return tunables


def build_dialect(section: Optional[Dict[str, Any]] = None) -> OutletCliDialect:
    """Build the PDU CLI dialect, keeping APC defaults for anything not configured"""
    known = {f.name for f in fields(OutletCliDialect)}
    values = {}
    for key, value in (section or {}).items():
        if key not in known:
            raise ConfigError(f"Unknown cli setting '{key}'")
        if value is not None:
            values[key] = str(value)
    return replace(OutletCliDialect(), **values)


class _Prompter:
    """Asks for whatever the configuration file did not provide"""

    def __init__(self, ask: Callable[[str], str], ask_secret: Callable[[str], str]):
        self.ask = ask
        self.ask_secret = ask_secret

    def value(self, section: Dict[str, Any], key: str, prompt: str, secret: bool = False, required: bool = True) -> str:
        if section.get(key) is not None:
            configured = str(section[key]).strip()
            if configured or not required:
                return configured
        reader = self.ask_secret if secret else self.ask
        while True:
            try:
                answer = reader(prompt).strip()
            except EOFError:
                raise ConfigError(f"Input ended before '{key}' was provided")
            if answer or not required:
                return answer


def collect_config(sections: Optional[Dict[str, Dict[str, Any]]] = None,
                   ask: Callable[[str], str] = input,
                   ask_secret: Callable[[str], str] = getpass.getpass,
                   overrides: Optional[Dict[str, Any]] = None) -> RecoveryConfig:
    """
    Assemble the RecoveryConfig, prompting in order for anything not in the file.

    Args:
        sections: Output of load_config_file (may be empty)
        ask: Prompt function for plain values
        ask_secret: Prompt function for secrets (no echo)
        overrides: Tunable overrides from the command line

    Returns:
        The immutable configuration for this run
    """
    sections = sections or {}
    prompter = _Prompter(ask, ask_secret)
    target_section = sections.get('target', {})
    mgmt_section = sections.get('management', {})
    outlet_section = sections.get('outlet', {})

    address = prompter.value(target_section, 'address', 'Enter hostname or IP of the target system: ')
    ssh_user = prompter.value(target_section, 'ssh_user', 'Enter SSH username for the target system: ')
    label = prompter.value(outlet_section, 'label',
                           f'Enter PDU outlet label for the target [{address}]: ', required=False) or address

    mgmt_address = prompter.value(mgmt_section, 'address', 'Enter IPMI IP of the target system: ')
    mgmt_user = prompter.value(mgmt_section, 'username', 'Enter IPMI username: ')
    mgmt_secret = prompter.value(mgmt_section, 'password', 'Enter IPMI password: ', secret=True)

    pdu_address = prompter.value(outlet_section, 'pdu', 'Enter PDU hostname or IP: ')
    pdu_user = prompter.value(outlet_section, 'username', 'Enter PDU CLI username: ')
    pdu_secret = prompter.value(outlet_section, 'password', 'Enter PDU CLI password: ', secret=True)
    write_secret = prompter.value(outlet_section, 'write_community',
                                  'Enter PDU SNMP write community (blank to use the CLI only): ',
                                  secret=True, required=False)

    return RecoveryConfig(
        target=Target(address=address, ssh_user=ssh_user),
        management=ManagementEndpoint(address=mgmt_address, username=mgmt_user, secret=mgmt_secret),
        outlet=OutletEndpoint(
            address=pdu_address,
            cli_username=pdu_user,
            cli_secret=pdu_secret,
            label=label,
            write_secret=write_secret or None,
        ),
        tunables=build_tunables(sections.get('tunables'), overrides),
        dialect=build_dialect(sections.get('cli')),
    )

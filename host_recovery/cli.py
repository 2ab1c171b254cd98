#!/usr/bin/env python3
"""
Host recovery command line.

Checks whether a host is answering and, if not, escalates through an IPMI
power cycle and then a PDU outlet power cycle until it answers again.

Exit codes:
    0  host answering (never needed remediation, or recovered)
    1  a required program is missing, or the configuration is unusable
    2  every outlet power path failed
    3  outlet was power cycled but the host never answered
"""

import argparse
import getpass
import logging
import shutil
import sys
from typing import Callable, List, Optional

from prettytable import PrettyTable

from host_recovery.config import CONFIG_FILE, collect_config, load_config_file
from host_recovery.errors import ConfigError, DependencyMissing
from host_recovery.orchestrator import Disposition, EscalationOrchestrator, RecoveryResult

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('host_recovery')

# program -> package that usually provides it
REQUIRED_PROGRAMS = {
    'ping': 'iputils-ping',
    'ssh': 'openssh-client',
    'ipmitool': 'ipmitool',
}


def check_dependencies(which: Callable[[str], Optional[str]] = shutil.which) -> None:
    """Make sure every external program the run relies on is installed"""
    missing = [program for program in REQUIRED_PROGRAMS if which(program) is None]
    if missing:
        raise DependencyMissing(missing)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description='Recover an unresponsive host: IPMI power cycle, then PDU outlet power cycle')
    parser.add_argument('--config', default=CONFIG_FILE,
                        help='Configuration file path (optional; anything missing is prompted for)')
    parser.add_argument('--off-wait', type=int, help='Seconds an outlet stays off during a power cycle')
    parser.add_argument('--recovery-window', type=int, help='Seconds to wait for the host after each power cycle')
    parser.add_argument('--poll-interval', type=int, help='Seconds between checks while waiting for the host')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    return parser.parse_args(argv)


def format_summary(result: RecoveryResult, target: str) -> str:
    """Format the stage history and final disposition as a pretty table"""
    table = PrettyTable()
    table.field_names = ["Time", "Stage", "Reason"]
    table.align["Reason"] = "l"
    for transition in result.attempt.transitions:
        table.add_row([transition.timestamp.strftime('%Y-%m-%d %H:%M:%S'), transition.stage.value, transition.reason])

    outcome = PrettyTable()
    outcome.field_names = ["Target", "Result", "Exit code"]
    outcome.add_row([target, result.disposition.description.upper(), result.disposition.exit_code])
    return f"{table.get_string()}\n{outcome.get_string()}"


def main(argv: Optional[List[str]] = None,
         ask: Callable[[str], str] = input,
         ask_secret: Callable[[str], str] = getpass.getpass,
         which: Callable[[str], Optional[str]] = shutil.which,
         orchestrator_factory: Callable = EscalationOrchestrator.from_config) -> int:
    """Main entry point; returns the process exit code"""
    args = parse_arguments(argv)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        check_dependencies(which)
    except DependencyMissing as e:
        logger.error(f"{e} (e.g. sudo apt install {' '.join(REQUIRED_PROGRAMS[p] for p in e.programs)})")
        return Disposition.DEPENDENCY_MISSING.exit_code

    overrides = {
        'off_wait': args.off_wait,
        'recovery_window': args.recovery_window,
        'poll_interval': args.poll_interval,
    }
    try:
        config = collect_config(load_config_file(args.config), ask=ask, ask_secret=ask_secret, overrides=overrides)
    except ConfigError as e:
        logger.error(str(e))
        return Disposition.CONFIG_ERROR.exit_code

    orchestrator = orchestrator_factory(config)
    try:
        result = orchestrator.run()
    except KeyboardInterrupt:
        logger.warning("Interrupted; the target may be mid power cycle")
        return 130

    print("\n----- RECOVERY SUMMARY -----")
    print(format_summary(result, config.target.address))
    print("----------------------------\n")
    return result.disposition.exit_code


if __name__ == '__main__':
    sys.exit(main())

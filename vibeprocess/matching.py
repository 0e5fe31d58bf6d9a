"""Reconciliation of recorded instances against the live process table."""

from abc import ABC, abstractmethod
import logging
import os
import shlex
import shutil
import time
from typing import Dict, List, Optional, Set

from vibeprocess.procfs import ProcessInfo, ProcfsScanner
from vibeprocess.state import STATUS_RUNNING, STATUS_STOPPED, Instance, State

logger = logging.getLogger(__name__)

PORT_RESOURCE_TYPES = ('tcpport', 'port')

# The kernel keeps at most 15 characters of a command name
COMM_LENGTH = 15


def command_executable(command: str) -> str:
    """First word of a command line, or an empty string."""
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    return parts[0] if parts else ""


def extract_process_name(command: str) -> str:
    """Executable basename of a command line."""
    return os.path.basename(command_executable(command))


def expected_ports(inst: Instance) -> List[int]:
    """Ports an instance must be listening on to match."""
    ports = []
    for rtype in PORT_RESOURCE_TYPES:
        value = inst.resources.get(rtype)
        if not value:
            continue
        try:
            port = int(value)
        except ValueError:
            continue
        if port > 0:
            ports.append(port)
    return ports


class ProcessMatcher(ABC):
    """Interface for deciding whether a live process is an instance."""

    @abstractmethod
    def expected_identity(self, inst: Instance) -> str:
        """Identity the instance's process should have.

        Args:
            inst: Stopped instance

        Returns:
            The identity, or an empty string if the instance cannot match
        """
        return ""

    @abstractmethod
    def matches(self, identity: str, info: ProcessInfo) -> bool:
        """Whether a live process has the given identity."""
        return False


class BasenameMatcher(ProcessMatcher):
    """Matches the command's executable basename against the process name."""

    def expected_identity(self, inst: Instance) -> str:
        return extract_process_name(inst.command)

    def matches(self, identity: str, info: ProcessInfo) -> bool:
        if info.name == identity:
            return True
        return (len(info.name) == COMM_LENGTH and
                identity.startswith(info.name))


class ExecutablePathMatcher(ProcessMatcher):
    """Matches the canonical executable path against the process's exe link."""

    def expected_identity(self, inst: Instance) -> str:
        executable = command_executable(inst.command)
        if not executable:
            return ""
        if os.sep not in executable:
            executable = shutil.which(executable) or ""
            if not executable:
                return ""
        return os.path.realpath(executable)

    def matches(self, identity: str, info: ProcessInfo) -> bool:
        return bool(info.exe) and info.exe == identity


class MatchingEngine:
    """Keeps instance pids and statuses truthful."""

    def __init__(
        self,
        state: State,
        scanner: ProcfsScanner,
        matcher: Optional[ProcessMatcher] = None
    ) -> None:
        """Initialize matching engine.

        Args:
            state: Shared state
            scanner: Process-table scanner
            matcher: Identity strategy. If None, uses BasenameMatcher.
        """
        self.state = state
        self.scanner = scanner
        self.matcher = matcher or BasenameMatcher()

    def _refresh_running(self) -> int:
        """Refresh cpu time of live instances and stop dead ones."""
        transitions = 0
        for inst in self.state.instances.values():
            if inst.status != STATUS_RUNNING:
                continue
            if self.scanner.pid_alive(inst.pid):
                try:
                    inst.cpu_time = self.scanner.read_process_info(
                        inst.pid
                    ).cpu_time
                except LookupError as e:
                    logger.debug("Could not refresh %s: %s", inst.name, e)
                continue
            logger.info("Instance %s (PID %d) is gone", inst.name, inst.pid)
            inst.mark_stopped()
            inst.cpu_time = 0.0
            transitions += 1
        return transitions

    def _claim_match(
        self,
        inst: Instance,
        candidates: List[ProcessInfo],
        claimed: Set[int]
    ) -> bool:
        identity = self.matcher.expected_identity(inst)
        if not identity:
            return False
        ports = expected_ports(inst)

        for info in candidates:
            if info.pid in claimed:
                continue
            if not self.matcher.matches(identity, info):
                continue
            if any(port not in info.ports for port in ports):
                continue

            inst.mark_running(info.pid, int(time.time()))
            inst.cpu_time = info.cpu_time
            claimed.add(info.pid)
            logger.info(
                "Matched instance %s to running process %d", inst.name,
                info.pid
            )
            return True
        return False

    def match_and_update_instances(self) -> Dict[str, int]:
        """Run one reconciliation pass and persist the result.

        Returns:
            Counts of ``stopped`` and ``matched`` transitions

        Raises:
            ProcfsUnreadable: If the process table cannot be listed
        """
        with self.state.lock:
            stopped = self._refresh_running()
            candidates = self.scanner.discover_processes(
                exclude_pids=self.state.tracked_pids()
            )

            claimed: Set[int] = set()
            matched = 0
            for inst in self.state.instances.values():
                if inst.status != STATUS_STOPPED:
                    continue
                if self._claim_match(inst, candidates, claimed):
                    matched += 1

        self.state.save()
        return {'stopped': stopped, 'matched': matched}

"""Process lifecycle management."""

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional

import psutil

from vibeprocess.config import Config, Template, interpolate
from vibeprocess.exceptions import (
    EmptyCommand,
    InstanceAlreadyExists,
    InvalidStateTransition,
    ProcessNotFound,
    ProcessNotRunning,
    SignalDenied,
    SpawnFailure,
    VibeProcessError,
)
from vibeprocess.procfs import ProcfsScanner
from vibeprocess.resources import ResourceRegistry
from vibeprocess.state import (
    STATUS_RUNNING,
    STATUS_STARTING,
    STATUS_STOPPED,
    STATUS_STOPPING,
    Instance,
    State,
)

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r'%(\w+)')
DISCOVERED_TEMPLATE = 'discovered'


def is_process_running(pid: int) -> bool:
    """Whether pid is alive and not a zombie."""
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def can_manage_process(pid: int) -> bool:
    """Whether a null signal to pid is permitted."""
    if pid <= 0:
        return False
    try:
        psutil.Process(pid).send_signal(0)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False
    return True


def split_command(command: str) -> List[str]:
    """Split a command line into argv.

    Raises:
        EmptyCommand: If the command has no words
        SpawnFailure: If the command has unbalanced quotes
    """
    try:
        args = shlex.split(command)
    except ValueError as e:
        raise SpawnFailure(f"cannot parse command {command!r}: {e}") from e
    if not args:
        raise EmptyCommand()
    return args


class ProcessController:
    """Starts, stops, restarts and monitors instances."""

    def __init__(
        self,
        state: State,
        *,
        registry: Optional[ResourceRegistry] = None,
        scanner: Optional[ProcfsScanner] = None,
        stop_timeout: float = 2.0,
        stop_poll_interval: float = 0.1,
        monitor_interval: float = 2.0
    ) -> None:
        """Initialize process controller.

        Args:
            state: Shared state
            registry: Resource registry. If None, one is built on state.
            scanner: Process-table scanner used to inspect monitored pids
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL
            stop_poll_interval: Seconds between liveness checks while stopping
            monitor_interval: Seconds between liveness checks of monitored pids
        """
        self.state = state
        self.registry = registry or ResourceRegistry(state)
        self.scanner = scanner or ProcfsScanner()
        self.stop_timeout = stop_timeout
        self.stop_poll_interval = stop_poll_interval
        self.monitor_interval = monitor_interval
        self._children: Dict[int, subprocess.Popen] = {}

    @classmethod
    def from_config(
        cls,
        state: State,
        config: Config,
        scanner: Optional[ProcfsScanner] = None
    ) -> 'ProcessController':
        return cls(
            state,
            scanner=scanner or ProcfsScanner.from_config(config),
            stop_timeout=config.stop_timeout,
            stop_poll_interval=config.stop_poll_interval,
            monitor_interval=config.monitor_interval
        )

    # Spawning and reaping

    def _spawn(self, command: str, cwd: Optional[str]) -> subprocess.Popen:
        """Start command in a new session, hence a new process group."""
        args = split_command(command)
        logger.info("Command: %s", ' '.join(args))
        try:
            # pylint: disable=consider-using-with
            return subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                close_fds=True,
                start_new_session=True,
                cwd=cwd
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise SpawnFailure(f"failed to start: {e}") from e

    def _track(self, name: str, proc: subprocess.Popen) -> None:
        with self.state.lock:
            self._children[proc.pid] = proc
        threading.Thread(
            target=self._reap,
            args=(name, proc),
            name=f"reap-{name}",
            daemon=True
        ).start()

    def _reap(self, name: str, proc: subprocess.Popen) -> None:
        """Wait for a spawned child and record its exit."""
        returncode = proc.wait()
        with self.state.lock:
            self._children.pop(proc.pid, None)
            inst = self.state.instances.get(name)
            if inst is None or inst.pid != proc.pid:
                return
            inst.mark_stopped()
        logger.info(
            "Instance %s (PID %d) exited with code %d", name, proc.pid,
            returncode
        )
        self.state.save()

    def _fail(self, inst: Instance, message: str) -> None:
        self.state.release_resources(inst.name)
        with self.state.lock:
            inst.mark_error(message)
        logger.error("Instance %s failed: %s", inst.name, message)
        self.state.save()

    def _resolve_tokens(self, command: str, inst: Instance) -> str:
        """Allocate one counter value per distinct ``%token``.

        Every occurrence of a token is replaced with the same value. A token
        naming a resource already claimed for the instance reuses that value.
        """
        values: Dict[str, str] = {}
        for token in TOKEN_PATTERN.findall(command):
            if token in values:
                continue
            with self.state.lock:
                claimed = inst.resources.get(token)
            if claimed:
                values[token] = claimed
                continue
            value = self.registry.allocate_resource(token, "")
            self.registry.claim_resource(token, value, inst.name)
            with self.state.lock:
                inst.resources[token] = value
            values[token] = value
        return TOKEN_PATTERN.sub(lambda m: values[m.group(1)], command)

    # Lifecycle

    def start_process(
        self,
        template: Template,
        name: str,
        variables: Optional[Dict[str, str]] = None
    ) -> Instance:
        """Create and start an instance from a template.

        On failure every resource claimed for the instance is released and
        the instance is kept with status error.

        Args:
            template: Blueprint to start from
            name: Unique instance name
            variables: Caller variables, overriding template defaults

        Returns:
            The running instance

        Raises:
            InstanceAlreadyExists: If name is taken
            VibeProcessError: If allocation or spawning fails
        """
        template = template.copy()
        with self.state.lock:
            if name in self.state.instances:
                raise InstanceAlreadyExists(name)
            inst = Instance(
                name=name, template=template.id, status=STATUS_STARTING
            )
            self.state.instances[name] = inst

        final_vars = dict(template.vars)
        final_vars.update({k: str(v) for k, v in (variables or {}).items()})

        try:
            for rtype in template.resources:
                value = self.registry.allocate_resource(
                    rtype, final_vars.get(rtype, "")
                )
                self.registry.claim_resource(rtype, value, name)
                with self.state.lock:
                    inst.resources[rtype] = value
                final_vars[rtype] = value

            command = interpolate(template.command, final_vars)
            command = self._resolve_tokens(command, inst)
        except VibeProcessError as e:
            self._fail(inst, f"resource allocation failed: {e}")
            raise

        with self.state.lock:
            inst.command = command
            if template.action:
                action = interpolate(template.action, final_vars)
                inst.action = interpolate(action, inst.resources)

        workdir = inst.resources.get('workdir') or None
        try:
            proc = self._spawn(command, workdir)
        except VibeProcessError as e:
            self._fail(inst, str(e))
            raise

        try:
            cwd = workdir or os.getcwd()
        except OSError:
            cwd = ""

        with self.state.lock:
            inst.mark_running(proc.pid, int(time.time()))
            inst.managed = True
            inst.cwd = cwd
        logger.info("Started %s with PID %d", name, proc.pid)
        self.state.save()
        self._track(name, proc)
        return inst

    def _signal_group(self, pid: int, sig: int) -> bool:
        """Signal the process group led by pid, falling back to pid alone.

        Returns:
            False if the process no longer exists

        Raises:
            SignalDenied: If neither signal is permitted
        """
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            pass
        except PermissionError:
            logger.debug("Group signal to %d denied, trying process", pid)
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError as e:
            raise SignalDenied(f"cannot signal process {pid}: {e}") from e
        return True

    def _reap_now(self, pid: int) -> None:
        """Best-effort collection of an exited child."""
        with self.state.lock:
            proc = self._children.get(pid)
        if proc is not None:
            try:
                proc.wait(timeout=self.stop_poll_interval)
            except subprocess.TimeoutExpired:
                pass
            return
        try:
            os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            pass

    def stop_process(self, name: str, release: bool = False) -> Instance:
        """Stop an instance with SIGTERM, escalating to SIGKILL.

        Args:
            name: Instance name
            release: Whether to release the instance's resources afterwards

        Returns:
            The stopped instance

        Raises:
            InstanceNotFound: If there is no such instance
            ProcessNotRunning: If the instance has no pid
            SignalDenied: If the process cannot be signalled
        """
        with self.state.lock:
            inst = self.state.get_instance(name)
            pid = inst.pid
            if pid <= 0:
                raise ProcessNotRunning(f"instance {name} is not running")
            previous_status = inst.status
            inst.status = STATUS_STOPPING

        logger.info("Stopping %s (PID %d)", name, pid)
        try:
            delivered = self._signal_group(pid, signal.SIGTERM)
        except SignalDenied:
            with self.state.lock:
                inst.status = previous_status
            raise

        if delivered:
            attempts = max(1, int(round(self.stop_timeout /
                                        self.stop_poll_interval)))
            for _ in range(attempts):
                if not is_process_running(pid):
                    break
                time.sleep(self.stop_poll_interval)

            if is_process_running(pid):
                logger.warning(
                    "Process %d did not exit after %.1fs, sending SIGKILL", pid,
                    self.stop_timeout
                )
                try:
                    self._signal_group(pid, signal.SIGKILL)
                except SignalDenied as e:
                    logger.warning("SIGKILL to %d refused: %s", pid, e)
                time.sleep(self.stop_poll_interval)

        self._reap_now(pid)

        with self.state.lock:
            if inst.pid in (pid, 0):
                inst.mark_stopped()
        if release:
            self.state.release_resources(name)
        logger.info("Stopped %s", name)
        self.state.save()
        return inst

    def restart_process(self, name: str) -> Instance:
        """Respawn a stopped instance with its stored command and resources.

        Raises:
            InvalidStateTransition: If the instance is not stopped
            ResourceTypeGone: If a claimed resource type was removed
            ResourceUnavailable: If a claimed value is now in use
            VibeProcessError: If spawning fails
        """
        with self.state.lock:
            inst = self.state.get_instance(name)
            if inst.status != STATUS_STOPPED:
                raise InvalidStateTransition(
                    f"instance {name} is not stopped (status: {inst.status})"
                )
            inst.status = STATUS_STARTING
            resources = dict(inst.resources)
            command = inst.command

        try:
            self.registry.reclaim(name, resources)
        except VibeProcessError:
            with self.state.lock:
                inst.status = STATUS_STOPPED
            raise

        try:
            proc = self._spawn(command, resources.get('workdir') or None)
        except VibeProcessError as e:
            self._fail(inst, f"failed to restart: {e}")
            raise

        with self.state.lock:
            inst.mark_running(proc.pid, int(time.time()))
            inst.managed = True
        logger.info("Restarted %s with PID %d", name, proc.pid)
        self.state.save()
        self._track(name, proc)
        return inst

    def monitor_process(self, pid: int, name: str) -> Instance:
        """Track an already running process.

        Its listening ports become ``tcpport``, ``tcpport1``, ... claims and
        its working directory a ``workdir`` claim. Values already claimed
        by another instance are left with that instance.

        Raises:
            InstanceAlreadyExists: If name is taken
            ProcessNotRunning: If pid is not alive
            ProcessNotFound: If pid cannot be read
        """
        if self.state.has_instance(name):
            raise InstanceAlreadyExists(name)
        if not is_process_running(pid):
            raise ProcessNotRunning(f"process {pid} not running")

        info = self.scanner.read_process_info(pid)
        if not info.cmdline:
            raise ProcessNotFound(pid, "empty command line")

        resources: Dict[str, str] = {}
        for index, port in enumerate(info.ports):
            key = 'tcpport' if index == 0 else f'tcpport{index}'
            resources[key] = str(port)
        if info.cwd:
            resources['workdir'] = info.cwd

        inst = Instance(
            name=name,
            command=info.cmdline,
            pid=pid,
            status=STATUS_RUNNING,
            resources=resources,
            started=int(time.time()),
            cwd=info.cwd,
            managed=can_manage_process(pid),
            cpu_time=info.cpu_time
        )
        with self.state.lock:
            if name in self.state.instances:
                raise InstanceAlreadyExists(name)
            self.state.instances[name] = inst
            self._claim_unowned(name, inst.resources)
        logger.info(
            "Monitoring %s (PID %d, managed=%s)", name, pid, inst.managed
        )
        self.state.save()

        threading.Thread(
            target=self._poll,
            args=(name, pid),
            name=f"monitor-{name}",
            daemon=True
        ).start()
        return inst

    def _poll(self, name: str, pid: int) -> None:
        """Watch a monitored pid until it disappears."""
        while True:
            time.sleep(self.monitor_interval)
            with self.state.lock:
                inst = self.state.instances.get(name)
                if inst is None or inst.pid != pid:
                    return
            if is_process_running(pid):
                continue
            with self.state.lock:
                inst = self.state.instances.get(name)
                if inst is None or inst.pid != pid:
                    return
                inst.mark_stopped()
            logger.info("Monitored process %s (PID %d) exited", name, pid)
            self.state.save()
            return

    def _import(self, name: str, info, resources: Dict[str, str]) -> Instance:
        inst = Instance(
            name=name,
            template=DISCOVERED_TEMPLATE,
            command=info.cmdline,
            pid=info.pid,
            status=STATUS_RUNNING,
            resources=resources,
            started=int(time.time()),
            cwd=info.cwd,
            managed=False,
            cpu_time=info.cpu_time
        )
        with self.state.lock:
            if name in self.state.instances:
                raise InstanceAlreadyExists(name)
            self.state.instances[name] = inst
            self._claim_unowned(name, inst.resources)
        logger.info("Imported %s (PID %d)", name, info.pid)
        self.state.save()
        return inst

    def _claim_unowned(self, name: str, resources: Dict[str, str]) -> None:
        """Claim resources for name, dropping keys another instance holds.

        Must be called with ``state.lock`` held.
        """
        for rtype, value in list(resources.items()):
            owner = self.state.claim_owner(rtype, value)
            if owner is not None and owner != name:
                logger.warning(
                    "%s %s is already claimed by %s, not claiming it for %s",
                    rtype, value, owner, name
                )
                del resources[rtype]
                continue
            self.state.claim_resource(rtype, value, name)

    def import_process(self, pid: int, name: str) -> Instance:
        """Import a discovered process as an unmanaged instance."""
        if self.state.has_instance(name):
            raise InstanceAlreadyExists(name)
        discovered = self.scanner.discover_process(pid)
        return self._import(name, discovered.info, {})

    def import_process_on_port(self, port: int, name: str) -> Instance:
        """Import the process listening on port as an unmanaged instance."""
        if self.state.has_instance(name):
            raise InstanceAlreadyExists(name)
        discovered = self.scanner.discover_process_on_port(port)
        return self._import(name, discovered.info, {'tcpport': str(port)})

    def delete_instance(self, name: str) -> None:
        """Stop a running managed instance, release its claims and forget it."""
        with self.state.lock:
            inst = self.state.get_instance(name)
            running = inst.status == STATUS_RUNNING and inst.pid > 0
            managed = inst.managed
        if running and managed:
            self.stop_process(name)
        self.state.release_resources(name)
        self.state.remove_instance(name)
        logger.info("Deleted %s", name)
        self.state.save()

    def execute_action(self, action: str) -> None:
        """Run an action through the shell without waiting for it.

        Raises:
            EmptyCommand: If action is blank
            SpawnFailure: If the shell cannot be started
        """
        if not action or not action.strip():
            raise EmptyCommand("empty action")
        try:
            # pylint: disable=consider-using-with
            proc = subprocess.Popen(
                action,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True
            )
        except OSError as e:
            raise SpawnFailure(f"failed to start action: {e}") from e
        logger.info("Started action %r (PID %d)", action, proc.pid)
        threading.Thread(target=proc.wait, daemon=True).start()

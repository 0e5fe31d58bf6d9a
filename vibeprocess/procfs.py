"""Process-table scanner over the Linux procfs text formats.

Two caches back every query:

* the port map (listening TCP port -> pids), rebuilt as a whole when older
  than ``port_cache_ttl``;
* per-pid ``ProcessInfo`` snapshots, refreshed when older than
  ``process_cache_ttl`` and evicted as soon as the pid disappears.

Both caches are refreshed outside their lock and swapped in under it, so
readers never observe a half-built structure. Every public query returns a
copy.
"""

from dataclasses import dataclass, field
import logging
import os
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from vibeprocess.exceptions import (
    ProcessNotFound,
    ProcessNotRunning,
    ProcfsUnreadable,
)

logger = logging.getLogger(__name__)

TCP_TABLES = ('net/tcp', 'net/tcp6')
TCP_LISTEN = '0A'
MAX_CHAIN_HOPS = 100
KTHREADD_PID = 2

SHELL_NAMES = frozenset(
    ['sh', 'bash', 'zsh', 'fish', 'dash', 'ksh', 'tcsh', 'csh']
)

KERNEL_THREAD_PREFIXES = (
    'kworker', 'ksoftirqd', 'kthreadd', 'kswapd', 'migration', 'watchdog',
    'cpuhp', 'kdevtmpfs', 'netns', 'kauditd', 'khungtaskd', 'oom_reaper',
    'writeback', 'kcompactd', 'crypto', 'kblockd', 'kintegrityd',
    'kqueuewq', 'ata_sff', 'scsi', 'pool', 'rcu', 'mm_percpu', 'slub'
)


@dataclass
class ProcessInfo:
    """Point-in-time snapshot of one process."""
    pid: int
    ppid: int = 0
    name: str = ""
    cmdline: str = ""
    exe: str = ""
    cwd: str = ""
    environ: Dict[str, str] = field(default_factory=dict)
    ports: List[int] = field(default_factory=list)
    cpu_time: float = 0.0
    kernel_thread: bool = False

    def copy(self) -> 'ProcessInfo':
        return ProcessInfo(
            pid=self.pid,
            ppid=self.ppid,
            name=self.name,
            cmdline=self.cmdline,
            exe=self.exe,
            cwd=self.cwd,
            environ=dict(self.environ),
            ports=list(self.ports),
            cpu_time=self.cpu_time,
            kernel_thread=self.kernel_thread
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            'pid': self.pid,
            'ppid': self.ppid,
            'name': self.name,
            'command': self.cmdline,
            'exe': self.exe,
            'cwd': self.cwd,
            'ports': list(self.ports),
            'cpu_time': self.cpu_time,
        }


@dataclass
class DiscoveredProcess:
    """A process together with its ancestry."""
    info: ProcessInfo
    chain: List[ProcessInfo]
    launch_script: Optional[ProcessInfo] = None


@dataclass
class StatRecord:
    """Fields extracted from ``/proc/<pid>/stat``."""
    name: str
    state: str
    ppid: int
    cpu_ticks: int


def clock_ticks() -> int:
    """Clock ticks per second used by the kernel's CPU counters."""
    try:
        ticks = os.sysconf('SC_CLK_TCK')
    except (ValueError, OSError, AttributeError):
        return 100
    return ticks if ticks > 0 else 100


def parse_stat(text: str) -> Optional[StatRecord]:
    """Parse a stat record.

    The command name sits between the first ``(`` and the *last* ``)``, as
    the name itself may contain spaces and parentheses.

    Returns:
        The parsed record, or None if the text is malformed
    """
    first = text.find('(')
    last = text.rfind(')')
    if first == -1 or last < first:
        return None

    name = text[first + 1:last]
    fields = text[last + 1:].split()
    if len(fields) < 2:
        return None

    try:
        ppid = int(fields[1])
    except ValueError:
        return None

    cpu_ticks = 0
    if len(fields) >= 13:
        try:
            cpu_ticks = int(fields[11]) + int(fields[12])  # utime + stime
        except ValueError:
            cpu_ticks = 0
    return StatRecord(name=name, state=fields[0], ppid=ppid,
                      cpu_ticks=cpu_ticks)


def parse_tcp_table(text: str) -> Dict[str, int]:
    """Map socket inode to local port for every LISTEN row of a TCP table."""
    inode_to_port: Dict[str, int] = {}
    lines = text.splitlines()
    for line in lines[1:]:
        fields = line.split()
        if len(fields) < 10 or fields[3] != TCP_LISTEN:
            continue
        _, sep, port_hex = fields[1].rpartition(':')
        if not sep:
            continue
        try:
            port = int(port_hex, 16)
        except ValueError:
            continue
        inode_to_port[fields[9]] = port
    return inode_to_port


def parse_environ(data: bytes) -> Dict[str, str]:
    environ = {}
    for pair in data.split(b'\0'):
        key, sep, value = pair.decode('utf-8', 'replace').partition('=')
        if sep and key:
            environ[key] = value
    return environ


def socket_inode(link: str) -> Optional[str]:
    if link.startswith('socket:[') and link.endswith(']'):
        return link[len('socket:['):-1]
    return None


def is_kernel_thread(pid: int, cmdline: str, ppid: int) -> bool:
    """Kernel threads are kthreadd itself or cmdline-less children of 0/2."""
    if pid == KTHREADD_PID:
        return True
    return not cmdline.strip() and ppid in (0, KTHREADD_PID)


def looks_like_kernel_worker(info: ProcessInfo) -> bool:
    if info.kernel_thread:
        return True
    if info.cmdline.strip():
        return False
    return info.name.startswith(KERNEL_THREAD_PREFIXES)


def is_shell(name: str) -> bool:
    return name in SHELL_NAMES


def find_launch_script(chain: List[ProcessInfo]) -> Optional[ProcessInfo]:
    """Find the process a user most likely launched by hand.

    This is the first chain entry whose parent is a shell. Without a shell
    ancestor, the outermost entry that is neither init nor systemd is used.

    Args:
        chain: Parent chain as returned by ``get_parent_chain``

    Returns:
        The launch process, or None for an empty chain
    """
    for entry, parent in zip(chain, chain[1:]):
        if is_shell(parent.name) or is_shell(os.path.basename(parent.exe)):
            return entry

    for entry in reversed(chain):
        if entry.pid != 1 and entry.name != 'systemd':
            return entry
    return None


class ProcfsScanner:
    """Reads processes, listening ports and ancestry from procfs."""

    def __init__(
        self,
        proc_root: str = '/proc',
        *,
        port_cache_ttl: float = 0.5,
        process_cache_ttl: float = 1.0,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        """Initialize scanner.

        Args:
            proc_root: Mount point of the process table
            port_cache_ttl: Seconds a port map stays valid
            process_cache_ttl: Seconds a per-pid snapshot stays valid
            clock: Monotonic time source
        """
        self.proc_root = proc_root
        self.port_cache_ttl = port_cache_ttl
        self.process_cache_ttl = process_cache_ttl
        self.clock = clock
        self.ticks_per_second = clock_ticks()

        self._port_lock = threading.Lock()
        self._port_map: Dict[int, List[int]] = {}
        self._port_stamp: Optional[float] = None

        self._info_lock = threading.Lock()
        self._info_cache: Dict[int, Tuple[float, ProcessInfo]] = {}

    @classmethod
    def from_config(cls, config) -> 'ProcfsScanner':
        return cls(
            config.proc_root,
            port_cache_ttl=config.port_cache_ttl,
            process_cache_ttl=config.process_cache_ttl
        )

    def _path(self, *parts) -> str:
        return os.path.join(self.proc_root, *[str(p) for p in parts])

    def list_pids(self) -> List[int]:
        """List every numeric entry under the process-table root.

        Raises:
            ProcfsUnreadable: If the root cannot be listed
        """
        try:
            entries = os.listdir(self.proc_root)
        except OSError as e:
            raise ProcfsUnreadable(
                f"cannot read process table {self.proc_root}: {e}"
            ) from e
        return sorted(int(entry) for entry in entries if entry.isdigit())

    def pid_alive(self, pid: int) -> bool:
        """Whether pid exists and is not a zombie."""
        if pid <= 0:
            return False
        try:
            with open(self._path(pid, 'stat'), 'r', encoding='utf-8',
                      errors='replace') as f:
                record = parse_stat(f.read())
        except OSError:
            return False
        return record is not None and record.state not in ('Z', 'X')

    def invalidate(self) -> None:
        """Drop both caches."""
        with self._port_lock:
            self._port_stamp = None
            self._port_map = {}
        with self._info_lock:
            self._info_cache.clear()

    # Ports

    def _read_inode_ports(self) -> Dict[str, int]:
        inode_to_port: Dict[str, int] = {}
        for table in TCP_TABLES:
            try:
                with open(self._path(table), 'r', encoding='utf-8') as f:
                    inode_to_port.update(parse_tcp_table(f.read()))
            except OSError as e:
                logger.debug("Skipping TCP table %s: %s", table, e)
        return inode_to_port

    def _socket_inodes(self, pid: int) -> Iterable[str]:
        fd_dir = self._path(pid, 'fd')
        try:
            fds = os.listdir(fd_dir)
        except OSError:
            return
        for fd in fds:
            try:
                link = os.readlink(os.path.join(fd_dir, fd))
            except OSError:
                continue
            inode = socket_inode(link)
            if inode is not None:
                yield inode

    def build_port_map(self) -> Dict[int, List[int]]:
        """Map every listening TCP port to the pids holding its socket.

        Returns:
            A fresh copy of the (possibly cached) port map

        Raises:
            ProcfsUnreadable: If the process-table root cannot be listed
        """
        with self._port_lock:
            if (self._port_stamp is not None and
                    self.clock() - self._port_stamp < self.port_cache_ttl):
                return {p: list(pids) for p, pids in self._port_map.items()}

        inode_to_port = self._read_inode_ports()
        port_map: Dict[int, List[int]] = {}
        if inode_to_port:
            for pid in self.list_pids():
                for inode in self._socket_inodes(pid):
                    port = inode_to_port.get(inode)
                    if port is None:
                        continue
                    pids = port_map.setdefault(port, [])
                    if pid not in pids:
                        pids.append(pid)
        else:
            # Still surface an unreadable root
            self.list_pids()

        with self._port_lock:
            self._port_map = port_map
            self._port_stamp = self.clock()
        logger.debug("Rebuilt port map with %d listening ports", len(port_map))
        return {p: list(pids) for p, pids in port_map.items()}

    def get_ports_for_process(
        self,
        pid: int,
        port_map: Optional[Dict[int, List[int]]] = None
    ) -> List[int]:
        if port_map is None:
            port_map = self.build_port_map()
        return sorted(port for port, pids in port_map.items() if pid in pids)

    def get_processes_listening_on_port(self, port: int) -> List[int]:
        return self.build_port_map().get(port, [])

    # Processes

    def _evict(self, pid: int) -> None:
        with self._info_lock:
            self._info_cache.pop(pid, None)

    def _cached(self, pid: int) -> Optional[ProcessInfo]:
        with self._info_lock:
            entry = self._info_cache.get(pid)
            if entry is None:
                return None
            stamp, info = entry
            if self.clock() - stamp >= self.process_cache_ttl:
                return None
            return info.copy()

    def _readlink(self, *parts) -> str:
        try:
            return os.readlink(self._path(*parts))
        except OSError:
            return ""

    def read_process_info(
        self,
        pid: int,
        port_map: Optional[Dict[int, List[int]]] = None
    ) -> ProcessInfo:
        """Read a snapshot of pid.

        Kernel threads skip the executable, working directory, environment
        and port lookups.

        Args:
            pid: Process id
            port_map: Port map to resolve listening ports from. If None, the
                cached map is used.

        Raises:
            ProcessNotFound: If pid does not exist or its stat is unreadable
        """
        cached = self._cached(pid)
        if cached is not None:
            return cached

        if not os.path.isdir(self._path(pid)):
            self._evict(pid)
            raise ProcessNotFound(pid)

        try:
            with open(self._path(pid, 'stat'), 'r', encoding='utf-8',
                      errors='replace') as f:
                stat_text = f.read()
        except FileNotFoundError as e:
            self._evict(pid)
            raise ProcessNotFound(pid) from e
        except OSError as e:
            raise ProcessNotFound(pid, str(e)) from e

        record = parse_stat(stat_text)
        if record is None:
            raise ProcessNotFound(pid, "invalid stat format")

        info = ProcessInfo(
            pid=pid,
            ppid=record.ppid,
            name=record.name,
            cpu_time=record.cpu_ticks / self.ticks_per_second
        )

        try:
            with open(self._path(pid, 'cmdline'), 'rb') as f:
                raw = f.read()
            info.cmdline = raw.replace(b'\0', b' ').decode(
                'utf-8', 'replace'
            ).strip()
        except OSError:
            pass

        info.kernel_thread = is_kernel_thread(pid, info.cmdline, info.ppid)
        if not info.kernel_thread:
            info.exe = self._readlink(pid, 'exe')
            info.cwd = self._readlink(pid, 'cwd')
            try:
                with open(self._path(pid, 'environ'), 'rb') as f:
                    info.environ = parse_environ(f.read())
            except OSError:
                pass
            try:
                info.ports = self.get_ports_for_process(pid, port_map)
            except ProcfsUnreadable as e:
                logger.warning("Could not resolve ports for %d: %s", pid, e)

        with self._info_lock:
            self._info_cache[pid] = (self.clock(), info)
        return info.copy()

    def get_parent_chain(self, pid: int) -> List[ProcessInfo]:
        """Walk parent links upward from pid.

        Stops at init, at a parent pid of 0, on a revisited pid or after
        ``MAX_CHAIN_HOPS`` entries. An unreadable ancestor truncates the
        chain.
        """
        chain: List[ProcessInfo] = []
        seen = set()
        current = pid
        while current > 0 and current not in seen:
            if len(chain) >= MAX_CHAIN_HOPS:
                break
            seen.add(current)
            try:
                info = self.read_process_info(current)
            except ProcessNotFound:
                break
            chain.append(info)
            if current == 1 or info.ppid == 0:
                break
            current = info.ppid
        return chain

    def discover_process(self, pid: int) -> DiscoveredProcess:
        """Read pid with its parent chain and launch script.

        Raises:
            ProcessNotFound: If pid itself cannot be read
        """
        chain = self.get_parent_chain(pid)
        if not chain:
            raise ProcessNotFound(pid)
        return DiscoveredProcess(
            info=chain[0], chain=chain, launch_script=find_launch_script(chain)
        )

    def discover_process_on_port(self, port: int) -> DiscoveredProcess:
        """Discover the lowest pid listening on port.

        Raises:
            ProcessNotRunning: If nothing listens on port
        """
        pids = self.get_processes_listening_on_port(port)
        if not pids:
            raise ProcessNotRunning(f"no process listening on port {port}")
        return self.discover_process(min(pids))

    def discover_processes(
        self,
        exclude_pids: Iterable[int] = (),
        ports_only: bool = False
    ) -> List[ProcessInfo]:
        """List live user-space processes.

        Zombies and kernel threads are left out. One port map serves the
        whole pass.

        Args:
            exclude_pids: Pids to leave out, usually those already tracked
            ports_only: Only keep processes with listening ports

        Raises:
            ProcfsUnreadable: If the process-table root cannot be listed
        """
        excluded = set(exclude_pids)
        port_map = self.build_port_map()
        result = []
        for pid in self.list_pids():
            if pid in excluded:
                continue
            if not self.pid_alive(pid):
                continue
            try:
                info = self.read_process_info(pid, port_map)
            except ProcessNotFound as e:
                logger.debug("Skipping pid %d: %s", pid, e)
                continue
            if looks_like_kernel_worker(info):
                continue
            if ports_only and not info.ports:
                continue
            result.append(info)
        return result

"""Integration tests for scanning and matching against the live process table."""

import os
import shutil
import socket
import subprocess
import tempfile
import threading
import time
import unittest

from vibeprocess.matching import MatchingEngine
from vibeprocess.process_manager import ProcessController
from vibeprocess.procfs import ProcfsScanner
from vibeprocess.state import STATUS_RUNNING, STATUS_STOPPED, Instance, State


@unittest.skipUnless(os.path.isdir('/proc/self/fd'), 'requires procfs')
class TestLiveScanner(unittest.TestCase):
    """Test the scanner against this test process."""

    def setUp(self):
        """Set up test fixtures."""
        self.scanner = ProcfsScanner()
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(('127.0.0.1', 0))
        self.listener.listen(1)
        self.port = self.listener.getsockname()[1]

    def tearDown(self):
        """Clean up test fixtures."""
        self.listener.close()

    def test_read_own_process(self):
        """Test reading this process."""
        info = self.scanner.read_process_info(os.getpid())
        self.assertEqual(info.pid, os.getpid())
        self.assertEqual(info.ppid, os.getppid())
        self.assertTrue(info.name)
        self.assertTrue(info.cmdline)
        self.assertEqual(info.cwd, os.getcwd())
        self.assertIn(self.port, info.ports)

    def test_discover_own_listener(self):
        """Test the listening socket leads back to this process."""
        self.assertIn(
            os.getpid(), self.scanner.get_processes_listening_on_port(self.port)
        )
        found = self.scanner.discover_process_on_port(self.port)
        self.assertEqual(found.info.pid, os.getpid())
        self.assertEqual(found.chain[0].pid, os.getpid())


@unittest.skipUnless(os.path.isdir('/proc/self/fd'), 'requires procfs')
class TestLiveMatching(unittest.TestCase):
    """Test reconciling a stopped instance with a process started elsewhere."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        sleep_path = shutil.which('sleep')
        if not sleep_path:
            self.skipTest('sleep not found')
        real = os.path.realpath(sleep_path)
        if os.path.basename(real) != 'sleep':
            self.skipTest('sleep is a multi-call binary')

        self.binary = os.path.join(self.test_dir, f'vpnap{os.getpid() % 10000}')
        shutil.copy2(real, self.binary)
        self.proc = None

        self.state = State(types={}, templates={})
        self.scanner = ProcfsScanner()
        self.engine = MatchingEngine(self.state, self.scanner)

    def tearDown(self):
        """Clean up test fixtures."""
        if self.proc is not None and self.proc.poll() is None:
            self.proc.kill()
            self.proc.wait()
        shutil.rmtree(self.test_dir)

    def test_external_process_is_adopted(self):
        """Test a process started by hand is matched, then released."""
        inst = Instance(name='nap', command=f'{self.binary} 30')
        self.state.instances['nap'] = inst

        self.proc = subprocess.Popen([self.binary, '30'])
        self.engine.match_and_update_instances()

        self.assertEqual(inst.status, STATUS_RUNNING)
        self.assertEqual(inst.pid, self.proc.pid)

        self.proc.kill()
        self.proc.wait()
        self.scanner.invalidate()
        result = self.engine.match_and_update_instances()

        self.assertEqual(result['stopped'], 1)
        self.assertEqual(inst.status, STATUS_STOPPED)
        self.assertEqual(inst.pid, 0)

    def test_reconcile_while_monitored_process_exits(self):
        """Test reconciliation passes racing the monitor poller."""
        controller = ProcessController(
            self.state, scanner=self.scanner, monitor_interval=0.01
        )
        self.proc = subprocess.Popen([self.binary, '30'])
        inst = controller.monitor_process(self.proc.pid, 'nap')

        errors = []
        done = threading.Event()

        def reconcile():
            while not done.is_set():
                try:
                    self.scanner.invalidate()
                    self.engine.match_and_update_instances()
                except Exception as e:  # pylint: disable=broad-except
                    errors.append(e)

        worker = threading.Thread(target=reconcile, daemon=True)
        worker.start()
        time.sleep(0.1)
        self.proc.kill()
        self.proc.wait()

        deadline = time.monotonic() + 5.0
        while time.monotonic() < deadline:
            with self.state.lock:
                if inst.status == STATUS_STOPPED:
                    break
            time.sleep(0.02)
        time.sleep(0.1)
        done.set()
        worker.join(5)

        self.assertEqual(errors, [])
        with self.state.lock:
            self.assertEqual(inst.status, STATUS_STOPPED)
            self.assertEqual(inst.pid, 0)


if __name__ == '__main__':
    unittest.main()

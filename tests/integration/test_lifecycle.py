"""Integration tests for starting, stopping and monitoring real processes."""

import os
import shutil
import signal
import subprocess
import tempfile
import time
import unittest

from vibeprocess.config import ResourceType, Template
from vibeprocess.exceptions import ProcessNotRunning
from vibeprocess.process_manager import ProcessController, is_process_running
from vibeprocess.procfs import ProcfsScanner
from vibeprocess.state import STATUS_RUNNING, STATUS_STOPPED, State


def wait_for(predicate, timeout=5.0, interval=0.05):
    """Poll predicate until it holds or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@unittest.skipUnless(os.path.isdir('/proc/self/fd'), 'requires procfs')
class TestLifecycle(unittest.TestCase):
    """Test the instance lifecycle with real child processes."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.state = State(types={
            'workdir': ResourceType('workdir'),
            'slot': ResourceType('slot', '', True, 1, 100),
        })
        self.controller = ProcessController(
            self.state,
            scanner=ProcfsScanner(),
            stop_timeout=1.0,
            stop_poll_interval=0.05,
            monitor_interval=0.1
        )
        self.external = []

    def tearDown(self):
        """Clean up test fixtures."""
        for inst in list(self.state.instances.values()):
            if inst.pid > 0 and inst.managed:
                try:
                    os.killpg(inst.pid, signal.SIGKILL)
                except OSError:
                    pass
        for proc in self.external:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        shutil.rmtree(self.test_dir)

    def _sleeper(self):
        return Template(
            id='sleeper', command='sleep ${secs}', vars={'secs': '1'}
        )

    def test_start_and_stop(self):
        """Test a started instance runs and stops on request."""
        inst = self.controller.start_process(
            self._sleeper(), 'nap', {'secs': '5'}
        )
        self.assertEqual(inst.command, 'sleep 5')
        self.assertEqual(inst.status, STATUS_RUNNING)
        pid = inst.pid
        self.assertTrue(is_process_running(pid))
        self.assertEqual(os.getpgid(pid), pid)

        self.controller.stop_process('nap')

        self.assertEqual(inst.status, STATUS_STOPPED)
        self.assertEqual(inst.pid, 0)
        self.assertTrue(wait_for(lambda: not is_process_running(pid)))

    def test_exit_is_recorded(self):
        """Test a child that exits on its own becomes stopped."""
        inst = self.controller.start_process(
            self._sleeper(), 'short', {'secs': '0.2'}
        )
        self.assertTrue(wait_for(lambda: inst.status == STATUS_STOPPED))
        self.assertEqual(inst.pid, 0)

    def test_stop_racing_natural_exit(self):
        """Test stopping a child while it exits on its own."""
        for delay in (0.1, 0.2, 0.3):
            name = f'brief-{delay}'
            inst = self.controller.start_process(
                self._sleeper(), name, {'secs': '0.2'}
            )
            time.sleep(delay)
            try:
                self.controller.stop_process(name)
            except ProcessNotRunning:
                with self.state.lock:
                    self.assertEqual(inst.status, STATUS_STOPPED)

            with self.state.lock:
                self.assertEqual(inst.status, STATUS_STOPPED)
                self.assertEqual(inst.pid, 0)

    def test_stop_escalates_for_stubborn_group(self):
        """Test a group ignoring SIGTERM is killed after the timeout."""
        template = Template(
            id='stubborn', command="sh -c 'trap \"\" TERM; sleep 30'"
        )
        inst = self.controller.start_process(template, 'stubborn')
        pid = inst.pid
        time.sleep(0.3)

        began = time.monotonic()
        self.controller.stop_process('stubborn')

        self.assertGreaterEqual(time.monotonic() - began, 0.9)
        self.assertEqual(inst.status, STATUS_STOPPED)
        self.assertTrue(wait_for(lambda: not is_process_running(pid)))

    def test_restart_keeps_claims(self):
        """Test restart respawns with the same resources."""
        template = Template(id='job', command='sleep 5 %slot')
        inst = self.controller.start_process(template, 'job')
        first_pid = inst.pid
        self.assertEqual(inst.command, 'sleep 5 1')

        self.controller.stop_process('job')
        self.assertEqual(self.state.claimed_by('job'), {'slot': '1'})
        self.state.release_resources('job')

        self.controller.restart_process('job')
        self.assertEqual(inst.status, STATUS_RUNNING)
        self.assertNotEqual(inst.pid, first_pid)
        self.assertEqual(inst.command, 'sleep 5 1')
        self.assertEqual(self.state.claimed_by('job'), {'slot': '1'})

        self.controller.stop_process('job', release=True)
        self.assertEqual(self.state.claimed_by('job'), {})

    def test_workdir_is_child_cwd(self):
        """Test the child starts inside its workdir."""
        template = Template(
            id='job', command='sleep 5', resources=['workdir']
        )
        inst = self.controller.start_process(
            template, 'job', {'workdir': self.test_dir}
        )
        info = self.controller.scanner.read_process_info(inst.pid)
        self.assertEqual(info.cwd, os.path.realpath(self.test_dir))

    def test_monitor_external_process(self):
        """Test a monitored process is marked stopped when it exits."""
        proc = subprocess.Popen(['sleep', '30'])
        self.external.append(proc)

        inst = self.controller.monitor_process(proc.pid, 'ext')
        self.assertEqual(inst.status, STATUS_RUNNING)
        self.assertTrue(inst.managed)
        self.assertEqual(inst.command, 'sleep 30')
        self.assertEqual(
            self.state.claimed_by('ext').get('workdir'), os.getcwd()
        )

        proc.kill()
        proc.wait()
        self.assertTrue(wait_for(lambda: inst.status == STATUS_STOPPED))

    def test_monitor_dead_pid(self):
        """Test monitoring an exited pid fails."""
        proc = subprocess.Popen(['true'])
        proc.wait()
        with self.assertRaises(ProcessNotRunning):
            self.controller.monitor_process(proc.pid, 'dead')
        self.assertFalse(self.state.has_instance('dead'))

    def test_delete_stops_running_instance(self):
        """Test deleting a running instance stops it first."""
        inst = self.controller.start_process(
            self._sleeper(), 'nap', {'secs': '30'}
        )
        pid = inst.pid
        self.controller.delete_instance('nap')
        self.assertFalse(self.state.has_instance('nap'))
        self.assertTrue(wait_for(lambda: not is_process_running(pid)))

    def test_execute_action(self):
        """Test actions run through the shell in the background."""
        marker = os.path.join(self.test_dir, 'opened')
        self.controller.execute_action(f'touch {marker}')
        self.assertTrue(wait_for(lambda: os.path.exists(marker)))


if __name__ == '__main__':
    unittest.main()

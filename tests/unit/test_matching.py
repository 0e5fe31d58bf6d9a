"""Unit tests for the matching engine."""

import os
import shutil
import tempfile
import unittest

from procfs_builder import FakeProcfs
from vibeprocess.matching import (
    BasenameMatcher,
    ExecutablePathMatcher,
    MatchingEngine,
    expected_ports,
    extract_process_name,
)
from vibeprocess.procfs import ProcessInfo, ProcfsScanner
from vibeprocess.state import STATUS_RUNNING, STATUS_STOPPED, Instance, State


class TestHelpers(unittest.TestCase):
    """Test command and port helpers."""

    def test_extract_process_name(self):
        """Test the basename of the first word is used."""
        self.assertEqual(extract_process_name('/usr/bin/nc -l 9000'), 'nc')
        self.assertEqual(extract_process_name("'my app' --x"), 'my app')
        self.assertEqual(extract_process_name(''), '')

    def test_expected_ports(self):
        """Test only positive integer port claims count."""
        inst = Instance(
            name='a', resources={'tcpport': '9000', 'port': 'abc'}
        )
        self.assertEqual(expected_ports(inst), [9000])
        inst.resources = {'tcpport': '0', 'dbfile': '/a.db'}
        self.assertEqual(expected_ports(inst), [])

    def test_basename_matcher_tolerates_truncated_names(self):
        """Test a 15-character process name matches a longer basename."""
        matcher = BasenameMatcher()
        inst = Instance(name='a', command='/opt/very-long-server-name --x')
        identity = matcher.expected_identity(inst)

        self.assertTrue(
            matcher.matches(identity, ProcessInfo(pid=1, name='very-long-serve'))
        )
        self.assertFalse(
            matcher.matches(identity, ProcessInfo(pid=1, name='very-long'))
        )


class TestMatchingEngine(unittest.TestCase):
    """Test reconciliation against a fake process table."""

    def setUp(self):
        """Set up test fixtures."""
        self.test_dir = tempfile.mkdtemp()
        self.procfs = FakeProcfs(os.path.join(self.test_dir, 'proc'))
        self.scanner = ProcfsScanner(self.procfs.root)
        self.scanner.ticks_per_second = 100
        self.state = State(types={}, templates={})
        self.engine = MatchingEngine(self.state, self.scanner)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.test_dir)

    def _add_instance(self, name, command, **kwargs):
        inst = Instance(name=name, command=command, **kwargs)
        self.state.instances[name] = inst
        return inst

    def test_one_process_matches_one_instance(self):
        """Test two identical instances cannot share one process."""
        first = self._add_instance(
            'a', 'nc -l 9000', resources={'tcpport': '9000'}
        )
        second = self._add_instance(
            'b', 'nc -l 9000', resources={'tcpport': '9000'}
        )
        self.procfs.add_process(300, 'nc', cmdline=['nc', '-l', '9000'])
        self.procfs.listen(300, 9000)
        self.procfs.add_process(301, 'nc', cmdline=['nc', '-l', '9001'])
        self.procfs.listen(301, 9001)

        result = self.engine.match_and_update_instances()

        self.assertEqual(result, {'stopped': 0, 'matched': 1})
        self.assertEqual(first.status, STATUS_RUNNING)
        self.assertEqual(first.pid, 300)
        self.assertEqual(second.status, STATUS_STOPPED)
        self.assertEqual(second.pid, 0)

    def test_exclusive_match_without_ports(self):
        """Test each process is claimed by at most one instance."""
        first = self._add_instance('a', 'worker --queue a')
        second = self._add_instance('b', 'worker --queue b')
        self.procfs.add_process(400, 'worker')

        self.engine.match_and_update_instances()

        pids = sorted([first.pid, second.pid])
        self.assertEqual(pids, [0, 400])

    def test_tracked_pids_are_not_candidates(self):
        """Test a process already owned by an instance is not matched."""
        self._add_instance(
            'owner', 'worker', pid=400, status=STATUS_RUNNING
        )
        other = self._add_instance('other', 'worker')
        self.procfs.add_process(400, 'worker')

        result = self.engine.match_and_update_instances()

        self.assertEqual(result, {'stopped': 0, 'matched': 0})
        self.assertEqual(other.pid, 0)

    def test_second_pass_is_a_no_op(self):
        """Test reconciling twice without changes changes nothing."""
        self._add_instance('a', 'nc -l 9000', resources={'tcpport': '9000'})
        self.procfs.add_process(300, 'nc', cmdline=['nc', '-l', '9000'])
        self.procfs.listen(300, 9000)

        self.engine.match_and_update_instances()
        before = self.state.to_document()['instances']
        result = self.engine.match_and_update_instances()

        self.assertEqual(result, {'stopped': 0, 'matched': 0})
        after = self.state.to_document()['instances']
        self.assertEqual(before['a']['pid'], after['a']['pid'])
        self.assertEqual(before['a']['status'], after['a']['status'])

    def test_dead_instance_is_stopped(self):
        """Test a running instance whose pid vanished becomes stopped."""
        inst = self._add_instance(
            'gone', 'sleep 100', pid=999, status=STATUS_RUNNING,
            cpu_time=3.5, resources={'tcpport': '9000'}
        )

        result = self.engine.match_and_update_instances()

        self.assertEqual(result, {'stopped': 1, 'matched': 0})
        self.assertEqual(inst.status, STATUS_STOPPED)
        self.assertEqual(inst.pid, 0)
        self.assertEqual(inst.cpu_time, 0.0)
        self.assertEqual(inst.resources, {'tcpport': '9000'})

    def test_zombie_instance_is_stopped(self):
        """Test a zombie pid counts as dead."""
        inst = self._add_instance(
            'zombie', 'sleep 100', pid=500, status=STATUS_RUNNING
        )
        self.procfs.add_process(500, 'sleep', state='Z')

        self.engine.match_and_update_instances()
        self.assertEqual(inst.status, STATUS_STOPPED)

    def test_running_instance_cpu_refreshed(self):
        """Test live instances get their cpu time refreshed."""
        inst = self._add_instance(
            'busy', 'sleep 100', pid=600, status=STATUS_RUNNING
        )
        self.procfs.add_process(600, 'sleep', utime=150, stime=50)

        self.engine.match_and_update_instances()

        self.assertEqual(inst.status, STATUS_RUNNING)
        self.assertAlmostEqual(inst.cpu_time, 2.0)

    def test_match_requires_every_port(self):
        """Test a process must listen on each claimed port."""
        inst = self._add_instance(
            'a', 'nc -l 9000', resources={'tcpport': '9000', 'port': '9001'}
        )
        self.procfs.add_process(300, 'nc', cmdline=['nc', '-l', '9000'])
        self.procfs.listen(300, 9000)

        self.engine.match_and_update_instances()
        self.assertEqual(inst.status, STATUS_STOPPED)

        self.procfs.listen(300, 9001, ipv6=True)
        self.scanner.invalidate()
        self.engine.match_and_update_instances()
        self.assertEqual(inst.pid, 300)

    def test_executable_path_matcher(self):
        """Test matching by canonical executable path."""
        bin_dir = os.path.join(self.test_dir, 'bin')
        os.makedirs(bin_dir)
        app = os.path.join(bin_dir, 'app')
        with open(app, 'w', encoding='utf-8') as f:
            f.write('')

        self.engine = MatchingEngine(
            self.state, self.scanner, ExecutablePathMatcher()
        )
        inst = self._add_instance('app', f'{app} --serve')
        self.procfs.add_process(700, 'app', exe='/usr/bin/app')
        self.procfs.add_process(701, 'app', exe=os.path.realpath(app))

        self.engine.match_and_update_instances()

        self.assertEqual(inst.pid, 701)


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python3
"""Main entry point for the process orchestrator."""

import argparse
import logging
import sys
import time
from typing import Dict, List, Optional

import yaml

from vibeprocess.config import Config, ResourceType, load_template_file
from vibeprocess.exceptions import VibeProcessError
from vibeprocess.matching import MatchingEngine
from vibeprocess.persistence import YamlStatePersistence
from vibeprocess.process_manager import ProcessController
from vibeprocess.procfs import ProcfsScanner
from vibeprocess.state import State

logger = logging.getLogger(__name__)


class Orchestrator:
    """Wires state, scanner, controller and matching engine together."""

    def __init__(self, config: Config) -> None:
        self.config = config
        persistence = YamlStatePersistence(config.state_file)
        self.state = State.from_document(
            persistence.load(), persistence=persistence
        )
        for name, rtype in config.resource_types.items():
            self.state.types.setdefault(name, rtype)
        for template_id, template in config.templates.items():
            self.state.templates.setdefault(template_id, template)

        self.scanner = ProcfsScanner.from_config(config)
        self.controller = ProcessController.from_config(
            self.state, config, scanner=self.scanner
        )
        self.engine = MatchingEngine(self.state, self.scanner)


def parse_vars(pairs: List[str]) -> Dict[str, str]:
    """Parse ``key=value`` arguments.

    Raises:
        ValueError: If an argument has no ``=``
    """
    result = {}
    for pair in pairs:
        key, sep, value = pair.partition('=')
        if not sep or not key:
            raise ValueError(f"Expected key=value, got {pair!r}")
        result[key] = value
    return result


def format_cpu_time(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[:width - 3] + '...'


def print_instances(state: State) -> None:
    print(f"{'NAME':<20} {'STATUS':<9} {'PID':>7} {'CPU':>8}  COMMAND")
    with state.lock:
        instances = sorted(state.instances.values(), key=lambda i: i.name)
        rows = [(i.name, i.status, i.pid, i.cpu_time, i.command)
                for i in instances]
    for name, status, pid, cpu_time, command in rows:
        print(
            f"{truncate(name, 20):<20} {status:<9} {pid or '-':>7} "
            f"{format_cpu_time(cpu_time):>8}  {truncate(command, 60)}"
        )


def print_yaml(data) -> None:
    print(yaml.safe_dump(data, default_flow_style=False, sort_keys=True),
          end='')


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(description='Manage local processes.')
    parser.add_argument('--config', help='Path to configuration file')
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        default=None,
        help='Set the logging level (overrides config file)'
    )
    commands = parser.add_subparsers(dest='command', required=True)

    start = commands.add_parser('start', help='Start an instance')
    start.add_argument('template')
    start.add_argument('name')
    start.add_argument('vars', nargs='*', help='key=value overrides')

    stop = commands.add_parser('stop', help='Stop an instance')
    stop.add_argument('name')
    stop.add_argument(
        '--keep-resources',
        action='store_true',
        help='Keep resource claims for a later restart'
    )

    for command in ('restart', 'delete', 'action'):
        sub = commands.add_parser(command, help=f'{command.capitalize()} '
                                  'an instance')
        sub.add_argument('name')

    commands.add_parser('ps', help='List instances')

    monitor = commands.add_parser('monitor', help='Track a running process')
    monitor.add_argument('pid', type=int)
    monitor.add_argument('name')

    discover = commands.add_parser('discover', help='List untracked processes')
    discover.add_argument('--ports-only', action='store_true')
    discover.add_argument(
        '--import', dest='import_pid', type=int, metavar='PID'
    )
    discover.add_argument('--name', help='Instance name for --import')

    discover_port = commands.add_parser(
        'discover-port', help='Find the process listening on a port'
    )
    discover_port.add_argument('port', type=int)
    discover_port.add_argument('--import-as', metavar='NAME')

    inspect = commands.add_parser('inspect', help='Show a process and its parents')
    inspect.add_argument('pid', type=int)

    serve = commands.add_parser('serve', help='Reconcile periodically')
    serve.add_argument('--interval', type=float, default=None)

    template = commands.add_parser('template', help='Manage templates')
    template_cmds = template.add_subparsers(dest='template_command',
                                            required=True)
    template_cmds.add_parser('list')
    template_add = template_cmds.add_parser('add')
    template_add.add_argument('file')
    template_show = template_cmds.add_parser('show')
    template_show.add_argument('id')

    rtype = commands.add_parser('resource-type', help='Manage resource types')
    rtype_cmds = rtype.add_subparsers(dest='rtype_command', required=True)
    rtype_cmds.add_parser('list')
    rtype_add = rtype_cmds.add_parser('add')
    rtype_add.add_argument('name')
    rtype_add.add_argument('--check', default='')
    rtype_add.add_argument('--counter', action='store_true')
    rtype_add.add_argument('--start', type=int, default=0)
    rtype_add.add_argument('--end', type=int, default=0)

    return parser.parse_args(argv)


def run_command(orch: Orchestrator, args: argparse.Namespace) -> int:
    """Dispatch one command.

    Returns:
        Exit code
    """
    state = orch.state
    controller = orch.controller

    if args.command == 'start':
        template = state.get_template(args.template)
        inst = controller.start_process(
            template, args.name, parse_vars(args.vars)
        )
        print(f"Started {inst.name} (PID {inst.pid}): {inst.command}")
    elif args.command == 'stop':
        controller.stop_process(args.name, release=not args.keep_resources)
        print(f"Stopped {args.name}")
    elif args.command == 'restart':
        inst = controller.restart_process(args.name)
        print(f"Restarted {inst.name} (PID {inst.pid})")
    elif args.command == 'delete':
        controller.delete_instance(args.name)
        print(f"Deleted {args.name}")
    elif args.command == 'action':
        inst = state.get_instance(args.name)
        controller.execute_action(inst.action)
    elif args.command == 'ps':
        orch.engine.match_and_update_instances()
        print_instances(state)
    elif args.command == 'monitor':
        inst = controller.monitor_process(args.pid, args.name)
        print(f"Monitoring {inst.name} (PID {inst.pid}, "
              f"managed={inst.managed})")
    elif args.command == 'discover':
        if args.import_pid is not None:
            name = args.name or f"pid-{args.import_pid}"
            inst = controller.import_process(args.import_pid, name)
            print(f"Imported {inst.name} (PID {inst.pid})")
        else:
            processes = orch.scanner.discover_processes(
                exclude_pids=state.tracked_pids(), ports_only=args.ports_only
            )
            print_yaml([info.to_dict() for info in processes])
    elif args.command == 'discover-port':
        if args.import_as:
            inst = controller.import_process_on_port(args.port, args.import_as)
            print(f"Imported {inst.name} (PID {inst.pid})")
        else:
            found = orch.scanner.discover_process_on_port(args.port)
            print_yaml(found.info.to_dict())
    elif args.command == 'inspect':
        found = orch.scanner.discover_process(args.pid)
        print_yaml({
            'process': found.info.to_dict(),
            'launch_script': (
                found.launch_script.to_dict() if found.launch_script else None
            ),
            'parents': [
                {'pid': p.pid, 'name': p.name, 'command': p.cmdline}
                for p in found.chain[1:]
            ],
        })
    elif args.command == 'serve':
        interval = args.interval or orch.config.refresh_interval
        logger.info("Reconciling every %.1fs", interval)
        try:
            while True:
                result = orch.engine.match_and_update_instances()
                logger.debug("Reconciliation pass: %s", result)
                time.sleep(interval)
        except KeyboardInterrupt:
            logger.info("Shutting down")
    elif args.command == 'template':
        if args.template_command == 'list':
            for template_id, template in sorted(state.templates.items()):
                print(f"{template_id:<20} {template.label}")
        elif args.template_command == 'add':
            template = load_template_file(args.file)
            state.add_template(template)
            state.save()
            print(f"Added template {template.id}")
        else:
            print_yaml(state.get_template(args.id).to_dict())
    elif args.command == 'resource-type':
        if args.rtype_command == 'list':
            print_yaml({
                name: rt.to_dict() for name, rt in sorted(state.types.items())
            })
        else:
            rtype = ResourceType(
                name=args.name,
                check=args.check,
                counter=args.counter,
                start=args.start,
                end=args.end
            )
            state.add_resource_type(rtype)
            state.save()
            print(f"Added resource type {rtype.name}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    args = parse_args(argv)
    try:
        config = Config.from_yaml_or_default(args.config)
    except (ValueError, TypeError, FileNotFoundError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        return run_command(Orchestrator(config), args)
    except (VibeProcessError, ValueError) as e:
        logger.error("Error: %s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())

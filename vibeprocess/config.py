"""Configuration classes for the process orchestrator."""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

DEFAULT_STATE_FILE = os.path.join('~', '.vibeprocess', 'state.yaml')


@dataclass
class ResourceType:
    """Resource type definition.

    The check command is a shell command template containing the literal
    placeholder ``${value}``. Exit status 0 means the value is in use,
    anything else means it is available. An empty check means always
    available.
    """
    name: str
    check: str = ""
    counter: bool = False
    start: int = 0
    end: int = 0

    def __post_init__(self):
        """Validate resource type definition."""
        if not self.name:
            raise ValueError("Resource type name cannot be empty")
        self.name = self.name.lower()
        if self.check is None:
            self.check = ""
        if self.counter and self.start > self.end:
            raise ValueError(
                f"Counter range for {self.name} is empty: "
                f"{self.start}-{self.end}"
            )

    def render_check(self, value: str) -> str:
        """Substitute a value into the check command."""
        return self.check.replace('${value}', value)

    def to_dict(self) -> Dict[str, object]:
        return {
            'name': self.name,
            'check': self.check,
            'counter': self.counter,
            'start': self.start,
            'end': self.end,
        }


@dataclass
class Template:
    """Reusable blueprint for creating instances."""
    id: str
    command: str
    label: str = ""
    resources: List[str] = None
    vars: Dict[str, str] = None
    action: str = ""

    def __post_init__(self):
        """Validate template definition."""
        if not self.id:
            raise ValueError("Template id cannot be empty")
        if self.command is None:
            raise ValueError(f"Template {self.id} has no command")
        if self.resources is None:
            self.resources = []
        if self.vars is None:
            self.vars = {}
        self.vars = {k: str(v) for k, v in self.vars.items()}
        if self.action is None:
            self.action = ""
        if not self.label:
            self.label = self.id

    def copy(self) -> 'Template':
        return Template(
            id=self.id,
            command=self.command,
            label=self.label,
            resources=list(self.resources),
            vars=dict(self.vars),
            action=self.action
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            'id': self.id,
            'label': self.label,
            'command': self.command,
            'resources': list(self.resources),
            'vars': dict(self.vars),
            'action': self.action,
        }


def interpolate(pattern: str, values: Dict[str, str]) -> str:
    """Replace every ``${name}`` token whose name is in values.

    Args:
        pattern: Text containing ``${name}`` placeholders
        values: Mapping of placeholder names to values

    Returns:
        Pattern with known placeholders substituted
    """
    result = pattern
    for key, val in values.items():
        result = result.replace('${' + key + '}', val)
    return result


def default_resource_types() -> Dict[str, ResourceType]:
    """Built-in resource types."""
    port_check = "nc -z localhost ${value}"
    return {
        'tcpport': ResourceType('tcpport', port_check, True, 3000, 9999),
        'vncport': ResourceType('vncport', port_check, True, 5900, 5999),
        'serialport': ResourceType('serialport', port_check, True, 9600, 9699),
        'dbfile': ResourceType('dbfile', "test -f ${value}"),
        'socket': ResourceType('socket', "test -S ${value}"),
        'datadir': ResourceType('datadir'),
        'workdir': ResourceType('workdir'),
    }


def default_templates() -> Dict[str, Template]:
    """Built-in templates."""
    return {
        'postgres': Template(
            id='postgres',
            label='PostgreSQL Database',
            command='postgres -D ${datadir} -p ${tcpport}',
            resources=['tcpport', 'datadir'],
            vars={'datadir': '/tmp/pgdata'}
        ),
        'node-express': Template(
            id='node-express',
            label='Node.js Express Server',
            command='node server.js --port ${tcpport}',
            resources=['tcpport']
        ),
        'qemu': Template(
            id='qemu',
            label='QEMU Virtual Machine',
            command='qemu-system-x86_64 -vnc :${vncport} '
            '-serial tcp::${serialport},server,nowait ${args}',
            resources=['vncport', 'serialport'],
            vars={'args': '-m 2G'}
        ),
    }


def _resource_type_from(name: str, value) -> ResourceType:
    if isinstance(value, ResourceType):
        return value
    if isinstance(value, dict):
        data = dict(value)
        data.setdefault('name', name)
        return ResourceType(**data)
    raise TypeError(
        "Resource type configuration must be a dict or ResourceType"
    )


def _template_from(template_id: str, value) -> Template:
    if isinstance(value, Template):
        return value
    if isinstance(value, dict):
        data = dict(value)
        data.setdefault('id', template_id)
        return Template(**data)
    raise TypeError("Template configuration must be a dict or Template")


def load_template_file(path: str) -> Template:
    """Load a single template definition from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        TypeError: If the file does not hold a mapping
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Template file not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise TypeError(f"Template file {path} must contain a mapping")
    return _template_from(data.get('id', ''), data)


@dataclass
class Config:
    """Orchestrator configuration."""
    state_file: str = DEFAULT_STATE_FILE
    proc_root: str = '/proc'
    port_cache_ttl: float = 0.5
    process_cache_ttl: float = 1.0
    stop_timeout: float = 2.0
    stop_poll_interval: float = 0.1
    monitor_interval: float = 2.0
    refresh_interval: float = 2.0
    log_level: str = 'INFO'
    resource_types: Dict[str, ResourceType] = field(
        default_factory=default_resource_types
    )
    templates: Dict[str, Template] = field(default_factory=default_templates)

    def __post_init__(self):
        """Validate configuration and merge user sections over defaults."""
        for attr in ('port_cache_ttl', 'process_cache_ttl', 'stop_timeout',
                     'stop_poll_interval', 'monitor_interval',
                     'refresh_interval'):
            if getattr(self, attr) <= 0:
                raise ValueError(f"{attr} must be greater than 0")
        if not self.proc_root:
            raise ValueError("Process table root cannot be empty")
        if self.log_level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR',
                                  'CRITICAL'):
            raise ValueError(f"Invalid log level: {self.log_level}")
        self.state_file = os.path.expanduser(self.state_file)

        types = default_resource_types()
        for name, value in (self.resource_types or {}).items():
            rtype = _resource_type_from(name, value)
            types[rtype.name] = rtype
        self.resource_types = types

        templates = default_templates()
        for template_id, value in (self.templates or {}).items():
            template = _template_from(template_id, value)
            templates[template.id] = template
        self.templates = templates

    @classmethod
    def from_yaml(cls, config_path: str) -> 'Config':
        """Load configuration from YAML file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Config object

        Raises:
            FileNotFoundError: If config file not found
            TypeError: If config file does not hold a mapping
        """
        if not os.path.isfile(config_path):
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        if not isinstance(config_data, dict):
            raise TypeError(f"Config file {config_path} must be a mapping")
        return cls(**config_data)

    @classmethod
    def from_yaml_or_default(cls, config_path: Optional[str]) -> 'Config':
        if config_path:
            return cls.from_yaml(config_path)
        return cls()

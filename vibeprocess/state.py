"""Shared instance, template and resource tables."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from vibeprocess.config import (
    ResourceType,
    Template,
    default_resource_types,
    default_templates,
)
from vibeprocess.exceptions import InstanceNotFound, TemplateNotFound
from vibeprocess.persistence import NoopPersistence, StatePersistence

logger = logging.getLogger(__name__)

STATUS_STOPPED = 'stopped'
STATUS_STARTING = 'starting'
STATUS_RUNNING = 'running'
STATUS_STOPPING = 'stopping'
STATUS_ERROR = 'error'

STATUSES = (
    STATUS_STOPPED, STATUS_STARTING, STATUS_RUNNING, STATUS_STOPPING,
    STATUS_ERROR
)


@dataclass
class Instance:
    """A named process tracked by the orchestrator.

    ``pid`` is non-zero exactly when ``status`` is running.
    """
    name: str
    template: str = ""
    command: str = ""
    pid: int = 0
    status: str = STATUS_STOPPED
    resources: Dict[str, str] = field(default_factory=dict)
    started: int = 0
    cwd: str = ""
    managed: bool = False
    cpu_time: float = 0.0
    error: str = ""
    action: str = ""

    def mark_running(self, pid: int, started: int) -> None:
        self.pid = pid
        self.status = STATUS_RUNNING
        self.started = started
        self.error = ""

    def mark_stopped(self) -> None:
        self.pid = 0
        self.status = STATUS_STOPPED

    def mark_error(self, message: str) -> None:
        self.pid = 0
        self.status = STATUS_ERROR
        self.error = message

    def to_dict(self) -> Dict[str, object]:
        return {
            'name': self.name,
            'template': self.template,
            'command': self.command,
            'pid': self.pid,
            'status': self.status,
            'resources': dict(self.resources),
            'started': self.started,
            'cwd': self.cwd,
            'managed': self.managed,
            'cpu_time': self.cpu_time,
            'error': self.error,
            'action': self.action,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> 'Instance':
        inst = cls(**data)
        inst.resources = {k: str(v) for k, v in inst.resources.items()}
        if inst.status not in STATUSES:
            raise ValueError(f"Invalid status for {inst.name}: {inst.status}")
        return inst


@dataclass
class Resource:
    """A claimed (type, value) pair and its owning instance."""
    type: str
    value: str
    owner: str

    @property
    def key(self) -> str:
        return resource_key(self.type, self.value)

    def to_dict(self) -> Dict[str, str]:
        return {'type': self.type, 'value': self.value, 'owner': self.owner}


def resource_key(rtype: str, value: str) -> str:
    return f"{rtype}:{value}"


class State:
    """Shared table of instances, templates, resources and counters.

    One reentrant lock guards every table. Foreground lifecycle calls and
    background reaper/poller threads must hold ``state.lock`` while they
    read-modify-write instance fields, since pid, status and resource
    ownership form a compound invariant.
    """

    def __init__(
        self,
        *,
        types: Optional[Dict[str, ResourceType]] = None,
        templates: Optional[Dict[str, Template]] = None,
        persistence: Optional[StatePersistence] = None
    ) -> None:
        self.lock = threading.RLock()
        self.instances: Dict[str, Instance] = {}
        self.templates: Dict[str, Template] = (
            default_templates() if templates is None else dict(templates)
        )
        self.resources: Dict[str, Resource] = {}
        self.counters: Dict[str, int] = {}
        self.types: Dict[str, ResourceType] = (
            default_resource_types() if types is None else dict(types)
        )
        self.persistence = persistence or NoopPersistence()

    # Instances

    def get_instance(self, name: str) -> Instance:
        with self.lock:
            inst = self.instances.get(name)
            if inst is None:
                raise InstanceNotFound(name)
            return inst

    def has_instance(self, name: str) -> bool:
        with self.lock:
            return name in self.instances

    def tracked_pids(self) -> List[int]:
        with self.lock:
            return [i.pid for i in self.instances.values() if i.pid > 0]

    def remove_instance(self, name: str) -> Instance:
        with self.lock:
            inst = self.instances.pop(name, None)
            if inst is None:
                raise InstanceNotFound(name)
            return inst

    # Templates and resource types

    def get_template(self, template_id: str) -> Template:
        with self.lock:
            template = self.templates.get(template_id)
            if template is None:
                raise TemplateNotFound(template_id)
            return template.copy()

    def add_template(self, template: Template) -> None:
        with self.lock:
            self.templates[template.id] = template.copy()
        logger.info("Registered template %s", template.id)

    def add_resource_type(self, rtype: ResourceType) -> None:
        with self.lock:
            self.types[rtype.name] = rtype
        logger.info("Registered resource type %s", rtype.name)

    # Resource claims

    def claim_resource(self, rtype: str, value: str, owner: str) -> None:
        """Record owner as the holder of (rtype, value)."""
        with self.lock:
            res = Resource(rtype, value, owner)
            self.resources[res.key] = res

    def release_resources(self, owner: str) -> List[Resource]:
        """Remove every claim held by owner.

        Returns:
            The released claims
        """
        with self.lock:
            released = [
                res for res in self.resources.values() if res.owner == owner
            ]
            for res in released:
                del self.resources[res.key]
        if released:
            logger.info(
                "Released %d resource(s) owned by %s", len(released), owner
            )
        return released

    def claimed_by(self, owner: str) -> Dict[str, str]:
        with self.lock:
            return {
                res.type: res.value
                for res in self.resources.values() if res.owner == owner
            }

    def claim_owner(self, rtype: str, value: str) -> Optional[str]:
        with self.lock:
            res = self.resources.get(resource_key(rtype, value))
            return res.owner if res else None

    def resources_by_type(self) -> Dict[str, List[Resource]]:
        grouped: Dict[str, List[Resource]] = {}
        with self.lock:
            for res in self.resources.values():
                grouped.setdefault(res.type, []).append(
                    Resource(res.type, res.value, res.owner)
                )
        return grouped

    # Persistence

    def to_document(self) -> Dict[str, object]:
        """Snapshot every table into a plain document."""
        with self.lock:
            return {
                'instances': {
                    name: inst.to_dict()
                    for name, inst in self.instances.items()
                },
                'templates': {
                    tid: tmpl.to_dict() for tid, tmpl in self.templates.items()
                },
                'resources': {
                    key: res.to_dict() for key, res in self.resources.items()
                },
                'counters': dict(self.counters),
                'types': {
                    name: rt.to_dict() for name, rt in self.types.items()
                },
            }

    @classmethod
    def from_document(
        cls,
        document: Optional[Dict[str, object]],
        *,
        persistence: Optional[StatePersistence] = None
    ) -> 'State':
        """Build a state from a stored document.

        Missing sections fall back to defaults and built-in resource types
        absent from the document are merged back in.
        """
        state = cls(persistence=persistence)
        if not document:
            return state

        types = document.get('types') or {}
        for name, data in types.items():
            rtype = ResourceType(**data)
            state.types[rtype.name] = rtype

        templates = document.get('templates')
        if templates:
            state.templates = {
                tid: Template(**data) for tid, data in templates.items()
            }

        for name, data in (document.get('instances') or {}).items():
            state.instances[name] = Instance.from_dict(data)

        for key, data in (document.get('resources') or {}).items():
            state.resources[key] = Resource(
                data['type'], str(data['value']), data['owner']
            )

        state.counters = {
            k: int(v) for k, v in (document.get('counters') or {}).items()
        }
        return state

    def save(self) -> bool:
        """Persist the current state.

        The snapshot and the write happen under ``state.lock``, so writes
        land in the order their snapshots were taken.

        Returns:
            True on success, False if the persistence layer failed
        """
        with self.lock:
            document = self.to_document()
            try:
                self.persistence.save(document)
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to persist state: %s", e)
                return False
        return True

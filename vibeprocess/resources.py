"""Resource allocation with shell-probed availability."""

import logging
import subprocess
from typing import Dict

from vibeprocess.config import ResourceType
from vibeprocess.exceptions import (
    MissingExplicitValue,
    RangeExhausted,
    ResourceTypeGone,
    ResourceUnavailable,
    UnknownResourceType,
)
from vibeprocess.state import State

logger = logging.getLogger(__name__)


def check_resource(rtype: ResourceType, value: str) -> bool:
    """Run the type's availability probe for value.

    The probe runs through ``sh -c`` and blocks until it exits. Only the
    exit status is inspected: 0 means in use, anything else means free.

    Returns:
        True if value is available
    """
    if not rtype.check:
        return True

    command = rtype.render_check(value)
    try:
        result = subprocess.run(
            command,
            shell=True,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False
        )
    except OSError as e:
        # The probe never ran, which is a nonzero outcome
        logger.warning("Probe for %s %s failed to run: %s", rtype.name, value, e)
        return True

    available = result.returncode != 0
    logger.debug(
        "Probe %r exited %d (%s)", command, result.returncode,
        'available' if available else 'in use'
    )
    return available


class ResourceRegistry:
    """Allocates, claims and releases resources on a shared state."""

    def __init__(self, state: State) -> None:
        self.state = state

    def resource_type(self, rtype: str) -> ResourceType:
        with self.state.lock:
            definition = self.state.types.get(rtype)
        if definition is None:
            raise UnknownResourceType(rtype)
        return definition

    def check_resource(self, rtype: str, value: str) -> bool:
        return check_resource(self.resource_type(rtype), value)

    def allocate_resource(self, rtype: str, requested_value: str = "") -> str:
        """Pick a value for a resource type without claiming it.

        Counter types without a requested value scan upward from the stored
        counter, never below the range start, through the range end. Values
        currently claimed are skipped and the counter advances past the first
        value whose probe reports it available. Every other request must name
        a value that passes the probe.

        Args:
            rtype: Resource type name
            requested_value: Explicit value, empty for counter allocation

        Returns:
            The allocated value

        Raises:
            UnknownResourceType: If rtype is not registered
            RangeExhausted: If no counter candidate is available
            MissingExplicitValue: If a non-counter type has no value
            ResourceUnavailable: If the requested value is in use
        """
        definition = self.resource_type(rtype)

        if definition.counter and not requested_value:
            with self.state.lock:
                current = max(
                    self.state.counters.get(rtype, 0), definition.start
                )
                for candidate in range(current, definition.end + 1):
                    value = str(candidate)
                    if self.state.claim_owner(rtype, value) is not None:
                        continue
                    if check_resource(definition, value):
                        self.state.counters[rtype] = candidate + 1
                        logger.info("Allocated %s %s", rtype, value)
                        return value
            raise RangeExhausted(rtype, definition.start, definition.end)

        if not requested_value:
            raise MissingExplicitValue(rtype)
        if not check_resource(definition, requested_value):
            raise ResourceUnavailable(rtype, requested_value)
        logger.info("Allocated %s %s", rtype, requested_value)
        return requested_value

    def claim_resource(self, rtype: str, value: str, owner: str) -> None:
        self.state.claim_resource(rtype, value, owner)

    def release_resources_for_owner(self, owner: str) -> None:
        self.state.release_resources(owner)

    def reclaim(self, owner: str, resources: Dict[str, str]) -> None:
        """Re-validate and re-claim a stopped instance's resources.

        Every resource is checked before any is claimed, so a failure leaves
        the claim table untouched.

        Raises:
            ResourceTypeGone: If a type was removed since the claim
            ResourceUnavailable: If a value is now in use
        """
        for rtype, value in resources.items():
            with self.state.lock:
                definition = self.state.types.get(rtype)
            if definition is None:
                raise ResourceTypeGone(rtype)
            if not check_resource(definition, value):
                raise ResourceUnavailable(rtype, value)

        with self.state.lock:
            for rtype, value in resources.items():
                self.state.claim_resource(rtype, value, owner)

"""
Dependency planning for stack descriptors.
"""

import logging
import re
from typing import Dict, List, Set

from ..errors import ConfigurationError
from .models import StackDescriptor

logger = logging.getLogger(__name__)

OUTPUT_REFERENCE = re.compile(r"\$\{([A-Za-z0-9_.-]+)\.([A-Za-z0-9_]+)\}")


def output_references(descriptor: StackDescriptor) -> Set[str]:
    """Names of stacks whose outputs the descriptor's parameters reference."""
    referenced = set()
    for _, value in descriptor.parameters:
        for match in OUTPUT_REFERENCE.finditer(value):
            referenced.add(match.group(1))
    return referenced


def resolve_parameters(
    descriptor: StackDescriptor, outputs: Dict[str, Dict[str, str]]
) -> Dict[str, str]:
    """Substitute ``${stack.OutputKey}`` references with settled output values.

    Raises:
        ConfigurationError: if a referenced output is not present.
    """

    def substitute(match: "re.Match[str]") -> str:
        stack, key = match.group(1), match.group(2)
        value = outputs.get(stack, {}).get(key)
        if value is None:
            raise ConfigurationError(
                f"Stack '{descriptor.name}' references output {key} of "
                f"'{stack}', which it did not produce"
            )
        return value

    return {
        name: OUTPUT_REFERENCE.sub(substitute, value)
        for name, value in descriptor.parameters
    }


def validate(descriptors: List[StackDescriptor]) -> None:
    """Check names, dependency references and output references.

    Raises:
        ConfigurationError: on duplicate names, unresolved dependencies or
            output references to stacks that are not declared dependencies.
    """
    names: Set[str] = set()
    for descriptor in descriptors:
        if not descriptor.name:
            raise ConfigurationError("Stack name must not be empty")
        if descriptor.name in names:
            raise ConfigurationError(f"Duplicate stack name: {descriptor.name}")
        names.add(descriptor.name)

    for descriptor in descriptors:
        if descriptor.name in descriptor.depends_on:
            raise ConfigurationError(
                f"Circular dependency detected: {descriptor.name} depends on itself"
            )
        missing = sorted(descriptor.depends_on - names)
        if missing:
            raise ConfigurationError(
                f"Stack '{descriptor.name}' depends on unknown stack(s): "
                f"{', '.join(missing)}"
            )
        undeclared = sorted(output_references(descriptor) - descriptor.depends_on)
        if undeclared:
            raise ConfigurationError(
                f"Stack '{descriptor.name}' references outputs of "
                f"{', '.join(undeclared)} without depending on them"
            )


def dependents_map(descriptors: List[StackDescriptor]) -> Dict[str, Set[str]]:
    """Map each stack name to the names of stacks that depend on it."""
    dependents: Dict[str, Set[str]] = {d.name: set() for d in descriptors}
    for descriptor in descriptors:
        for dependency in descriptor.depends_on:
            dependents[dependency].add(descriptor.name)
    return dependents


def topological_order(descriptors: List[StackDescriptor]) -> List[StackDescriptor]:
    """Order descriptors so each one follows all of its dependencies.

    Ties are broken by input order, so an already valid input order is
    returned unchanged.

    Raises:
        ConfigurationError: if the descriptor set is invalid or has a cycle.
    """
    validate(descriptors)

    order_index = {d.name: idx for idx, d in enumerate(descriptors)}
    by_name = {d.name: d for d in descriptors}
    indegree = {d.name: len(d.depends_on) for d in descriptors}
    dependents = dependents_map(descriptors)

    ordered: List[StackDescriptor] = []
    ready = sorted(
        (name for name, count in indegree.items() if count == 0),
        key=order_index.__getitem__,
    )
    while ready:
        name = ready.pop(0)
        ordered.append(by_name[name])
        released = []
        for child in dependents[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                released.append(child)
        ready = sorted(ready + released, key=order_index.__getitem__)

    if len(ordered) != len(descriptors):
        cyclic = sorted(
            (name for name, count in indegree.items() if count > 0),
            key=order_index.__getitem__,
        )
        raise ConfigurationError(
            f"Circular dependency detected involving: {', '.join(cyclic)}"
        )

    logger.debug(f"Execution order: {', '.join(d.name for d in ordered)}")
    return ordered


def teardown_order(descriptors: List[StackDescriptor]) -> List[StackDescriptor]:
    """Reverse topological order: dependents before their dependencies."""
    return list(reversed(topological_order(descriptors)))


def dependency_graph(descriptors: List[StackDescriptor]) -> Dict[str, List[str]]:
    """Adjacency listing of dependencies, in execution order."""
    return {
        descriptor.name: sorted(descriptor.depends_on)
        for descriptor in topological_order(descriptors)
    }

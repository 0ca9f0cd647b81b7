"""
VM classification for Power Sequencer.

The category plan is built once from configuration and validated up front.
Classification then sorts VMs into the plan's ordered categories.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Tuple

from .config import Configuration
from .errors import ConfigurationError
from .models import (
    INFRASTRUCTURE,
    OTHER,
    PRIORITY,
    Category,
    CategoryKind,
    Direction,
    VMInfo,
)

logger = logging.getLogger("power-sequencer")


@dataclass(frozen=True)
class CategoryPlan:
    """Ordered categories for both directions plus the matching rules."""

    infra_vm_prefix: str
    priority_vms: Tuple[str, ...]
    tag_groups: Tuple[Category, ...]
    startup_order: Tuple[Category, ...]
    shutdown_order: Tuple[Category, ...]

    def order(self, direction: Direction) -> Tuple[Category, ...]:
        if direction is Direction.STARTUP:
            return self.startup_order
        return self.shutdown_order

    def is_excluded(self, vm_name: str) -> bool:
        return bool(self.infra_vm_prefix) and vm_name.startswith(self.infra_vm_prefix)

    def category_for(self, vm: VMInfo) -> Category:
        if self.is_excluded(vm.name):
            return INFRASTRUCTURE
        if vm.name in self.priority_vms:
            return PRIORITY
        for group in self.tag_groups:
            if group.matches(vm):
                return group
        return OTHER


@dataclass
class Classification:
    direction: Direction
    groups: "OrderedDict[Category, List[VMInfo]]" = field(default_factory=OrderedDict)
    excluded: List[VMInfo] = field(default_factory=list)

    @property
    def targets(self) -> List[VMInfo]:
        return [vm for members in self.groups.values() for vm in members]


def _resolve_order(
    names: Iterable[str], by_name: Dict[str, Category], setting: str
) -> Tuple[Category, ...]:
    order = []
    for name in names:
        if name not in by_name:
            raise ConfigurationError(f"{setting} references unknown category '{name}'")
        category = by_name[name]
        if category in order:
            raise ConfigurationError(f"{setting} lists category '{name}' more than once")
        order.append(category)
    missing = [c.name for c in by_name.values() if c not in order]
    if missing:
        raise ConfigurationError(f"{setting} is missing categories: {', '.join(missing)}")
    return tuple(order)


def build_plan(config: Configuration) -> CategoryPlan:
    """
    Derive the category plan from configuration.

    The default startup order is priority, the tag groups in configured order,
    then other. The default shutdown order runs the tag groups in reverse,
    then priority, then other. Either can be overridden by listing category
    names.

    Raises:
        ConfigurationError: On duplicate tag groups or an invalid order.
    """
    groups = []
    for tag_group in config.tag_groups:
        category = Category(
            CategoryKind.TAG_GROUP,
            tag_key=tag_group.key,
            tag_value=tag_group.value,
            label=tag_group.name,
        )
        if any(g.tag_key == category.tag_key and g.tag_value == category.tag_value for g in groups):
            raise ConfigurationError(f"Tag group '{category.name}' is configured more than once")
        groups.append(category)

    by_name: Dict[str, Category] = OrderedDict()
    for category in [PRIORITY, *groups, OTHER]:
        if category.name in by_name:
            raise ConfigurationError(f"Category name '{category.name}' is ambiguous")
        by_name[category.name] = category

    if config.startup_order:
        startup = _resolve_order(config.startup_order, by_name, "STARTUP_ORDER")
    else:
        startup = (PRIORITY, *groups, OTHER)

    if config.shutdown_order:
        shutdown = _resolve_order(config.shutdown_order, by_name, "SHUTDOWN_ORDER")
    else:
        shutdown = (*reversed(groups), PRIORITY, OTHER)

    return CategoryPlan(
        infra_vm_prefix=config.infra_vm_prefix,
        priority_vms=tuple(config.priority_vms),
        tag_groups=tuple(groups),
        startup_order=startup,
        shutdown_order=shutdown,
    )


def classify(vms: Iterable[VMInfo], plan: CategoryPlan, direction: Direction) -> Classification:
    """
    Partition VMs into the plan's categories, in the direction's order.

    Every category of the order is present in the result, possibly empty.
    Infrastructure-managed VMs are returned separately and never targeted.
    """
    classification = Classification(direction=direction)
    for category in plan.order(direction):
        classification.groups[category] = []

    for vm in vms:
        category = plan.category_for(vm)
        if category is INFRASTRUCTURE:
            logger.debug(f"VM '{vm.name}' is infrastructure-managed, excluding it")
            classification.excluded.append(vm)
            continue
        classification.groups[category].append(vm)

    for category, members in classification.groups.items():
        logger.info(f"Category '{category}': {len(members)} VM(s)")
    return classification

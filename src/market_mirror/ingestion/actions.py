"""Parse configured import actions into a validated plan."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence

from market_mirror.core.config import split_tokens
from market_mirror.core.exceptions import ConfigError
from market_mirror.core.models import ActionName, ImportAction

logger = logging.getLogger(__name__)


class ActionPlan:
    """Ordered, immutable set of import actions for one run.

    Unknown action names are logged and dropped. A plan with no valid action
    cannot be built.
    """

    def __init__(self, actions: Sequence[ImportAction]) -> None:
        if not actions:
            raise ConfigError(
                "No actions specified in the import configuration.",
                context={"field": "actions"},
            )
        self._actions = tuple(actions)

    @classmethod
    def from_config(
        cls,
        actions: Mapping[str, str],
        import_file_prefixes: Sequence[str] | None = None,
    ) -> ActionPlan:
        """Build a plan from an action-name → detail-string mapping.

        The Flat Files action takes its details from ``import_file_prefixes``
        rather than from its mapped value.
        """
        parsed: list[ImportAction] = []
        seen: set[ActionName] = set()
        for key, value in actions.items():
            name = ActionName.lookup(key)
            if name is None:
                logger.warning("Ignoring unknown import action %r", key)
                continue
            if name in seen:
                logger.warning("Ignoring duplicate import action %r", key)
                continue
            seen.add(name)

            if name == ActionName.FLAT_FILES:
                details = tuple(p.strip() for p in (import_file_prefixes or []) if p.strip())
            else:
                details = tuple(split_tokens(value))
            parsed.append(ImportAction(name=name, details=details))

        return cls(parsed)

    def find(self, name: ActionName) -> ImportAction | None:
        for action in self._actions:
            if action.name == name:
                return action
        return None

    def is_enabled(self, name: ActionName) -> bool:
        """Present, carrying details, and not switched off with "false"."""
        action = self.find(name)
        return action is not None and action.has_details and action.enabled

    def __contains__(self, name: object) -> bool:
        return any(a.name == name for a in self._actions)

    def __iter__(self) -> Iterator[ImportAction]:
        return iter(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def __repr__(self) -> str:
        names = ", ".join(a.name.value for a in self._actions)
        return f"ActionPlan([{names}])"

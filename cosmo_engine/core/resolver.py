"""
Action Resolver: selects the ActionMapping that handles a classified intent.
"""

import re
from typing import Dict, List, Optional, Any, Iterable

from ..models import ActionMapping
from ..models.conditions import evaluate
from ..utils import get_logger
from ..utils.error_handling import ConfigurationError


class ActionResolver:
    """
    Resolves an intent to an action.

    A mapping is eligible when it belongs to the intent, is active, every key
    of its ``required_context`` is present in the caller context and its
    condition holds over the context plus the request text (under ``input``).
    The eligible mapping with the highest priority wins; equal priorities go to
    the mapping created first, then to declaration order.
    """

    def __init__(self):
        self.logger = get_logger(__name__)

    def resolve(self, intent_key: str, mappings: Iterable[ActionMapping],
                context: Optional[Dict[str, Any]] = None, text: str = "",
                confidence: Optional[float] = None) -> Optional[ActionMapping]:
        """
        Select the action mapping for an intent.

        Args:
            intent_key: Classified intent
            mappings: Action mappings from the current configuration snapshot
            context: Caller-supplied context
            text: The request text, visible to conditions as ``input``
            confidence: Classification confidence, visible to conditions as
                ``confidence`` unless the context already defines it

        Returns:
            The winning ActionMapping, or None when no mapping is eligible
        """
        candidates = self.resolve_all(intent_key, mappings, context, text, confidence)
        if not candidates:
            self.logger.info(f"No action mapping resolved for intent {intent_key}")
            return None

        selected = candidates[0]
        self.logger.info(
            f"Resolved intent {intent_key} to {selected.action_key} "
            f"({selected.action_type.value}, priority {selected.priority})"
        )
        return selected

    def resolve_all(self, intent_key: str, mappings: Iterable[ActionMapping],
                    context: Optional[Dict[str, Any]] = None, text: str = "",
                    confidence: Optional[float] = None) -> List[ActionMapping]:
        """Return every eligible mapping in selection order."""
        context = context or {}
        scope = {**context, "input": text}
        if confidence is not None:
            scope.setdefault("confidence", confidence)

        eligible = []
        for index, mapping in enumerate(mappings):
            if mapping.intent_key != intent_key or not mapping.active:
                continue
            missing = [key for key in mapping.required_context if key not in context]
            if missing:
                self.logger.debug(f"Mapping {mapping.action_key} skipped, missing context: {missing}")
                continue
            if not evaluate(mapping.condition, scope):
                self.logger.debug(f"Mapping {mapping.action_key} skipped, condition not met")
                continue
            eligible.append((index, mapping))

        eligible.sort(key=lambda pair: (-pair[1].priority, pair[1].created_at, pair[0]))
        return [mapping for _, mapping in eligible]

    def extract_parameters(self, mapping: ActionMapping, text: str) -> Dict[str, Any]:
        """
        Extract action parameters from the request text.

        Each ``parameter_patterns`` entry is either a regex string or a mapping
        with ``pattern`` and an optional ``default``. The first capture group
        (or the whole match when the pattern has no groups) becomes the value.

        Raises:
            ConfigurationError: If a pattern is not a valid regular expression
        """
        parameters: Dict[str, Any] = {}
        for name, rule in mapping.parameter_patterns.items():
            if isinstance(rule, dict):
                pattern = rule.get("pattern")
                default = rule.get("default")
            else:
                pattern, default = rule, None

            value = default
            if pattern:
                try:
                    match = re.search(pattern, text or "", re.IGNORECASE)
                except re.error as e:
                    raise ConfigurationError(
                        f"Invalid parameter pattern for {name}: {str(e)}",
                        config_key=mapping.action_key
                    ) from e
                if match:
                    value = match.group(1) if match.groups() else match.group(0)

            if value is not None:
                parameters[name] = value

        return parameters

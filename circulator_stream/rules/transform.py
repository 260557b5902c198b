"""
Transform Engine
================

Applies the ordered, enabled rules of a configuration to one value.
"""

from typing import Iterator, Sequence

from circulator_stream.rules.schema import ProcessingRule, UnrecognizedRule


def _active(rules: Sequence[ProcessingRule]) -> Iterator[ProcessingRule]:
    for rule in rules:
        if rule.enabled and not isinstance(rule, UnrecognizedRule):
            yield rule


class TransformEngine:
    """
    Chains value transformations over an ordered rule list.

    Each enabled, recognized rule sees the previous rule's output. Disabled
    rules and unrecognized names are skipped. The engine itself keeps no
    state between calls; any window a rule keeps lives on the rule instance
    and only advances on ``commit``.

    Example:
        >>> engine = TransformEngine()
        >>> engine.apply(21.5, [])
        21.5
    """

    def apply(self, value: float, rules: Sequence[ProcessingRule]) -> float:
        processed = value
        for rule in _active(rules):
            processed = rule.apply(processed)
        return processed

    def commit(self, rules: Sequence[ProcessingRule]) -> None:
        """Record the values staged by the last apply() in the rule windows."""
        for rule in _active(rules):
            rule.commit()

    def discard(self, rules: Sequence[ProcessingRule]) -> None:
        """Forget the values staged by the last apply()."""
        for rule in _active(rules):
            rule.discard()

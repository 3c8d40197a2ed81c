"""
Data Mapper - copies fields between the engine's and the external system's
vocabulary according to a connector's DataMappingSet.

Mapping rules copy (they never remove the source field). Requests get the
outbound and bidirectional rules; response bodies get the inbound rules plus
the bidirectional rules read in reverse (target -> source). Custom mappings
rename top-level keys matching a regex and run on both directions.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from .conditions import all_match
from .definitions import CustomMappingRule, DataMappingSet, MappingRule
from .errors import TransformationFailed
from .paths import get_path, has_path, set_path
from .transformation import ConversionError, apply_value_transform


logger = logging.getLogger(__name__)


@dataclass
class MappingResult:
    record: Any
    unmapped: list[str] = field(default_factory=list)


class DataMapper:
    """Applies DataMappingSet rules to request and response records."""

    def __init__(self, strict_conversions: bool = True):
        self.strict_conversions = strict_conversions

    def map_request(self, record: Any, mapping: DataMappingSet) -> MappingResult:
        rules = [*mapping.outbound, *mapping.bidirectional]
        return self._apply(record, rules, mapping.custom_mappings)

    def map_response(self, record: Any, mapping: DataMappingSet) -> MappingResult:
        reversed_rules = [
            rule.model_copy(update={"source": rule.target, "target": rule.source})
            for rule in mapping.bidirectional
        ]
        return self._apply(record, [*mapping.inbound, *reversed_rules], mapping.custom_mappings)

    def _apply(
        self,
        record: Any,
        rules: Iterable[MappingRule],
        custom_rules: Iterable[CustomMappingRule],
    ) -> MappingResult:
        rules = list(rules)
        custom_rules = list(custom_rules)
        if not isinstance(record, dict) or not (rules or custom_rules):
            return MappingResult(record=record)

        working = copy.deepcopy(record)
        result = MappingResult(record=working)

        for rule in rules:
            self._apply_rule(working, rule, result)

        for custom in sorted(custom_rules, key=lambda c: c.priority, reverse=True):
            self._apply_custom(working, custom)

        if result.unmapped:
            logger.warning(f"Required mapping sources missing: {', '.join(result.unmapped)}")
        return result

    def _apply_rule(self, record: dict, rule: MappingRule, result: MappingResult) -> None:
        if rule.conditions and not all_match(record, rule.conditions):
            return

        if has_path(record, rule.source):
            value = get_path(record, rule.source)
        elif rule.default_value is not None:
            value = rule.default_value
        else:
            if rule.required:
                result.unmapped.append(rule.source)
            return

        set_path(record, rule.target, self._transform(rule.id, rule.transformation, value))

    def _apply_custom(self, record: dict, rule: CustomMappingRule) -> None:
        try:
            pattern = re.compile(rule.source_pattern)
        except re.error as e:
            raise TransformationFailed(rule.id, f"invalid source pattern: {e}")

        for key in list(record):
            match = pattern.fullmatch(key)
            if match is None:
                continue
            try:
                target = match.expand(rule.target_pattern)
            except (re.error, IndexError) as e:
                raise TransformationFailed(rule.id, f"invalid target pattern: {e}")
            if target == key:
                continue
            record[target] = self._transform(rule.id, rule.transformation, record.pop(key))

    def _transform(self, rule_id: str, name, value: Any) -> Any:
        if not name:
            return value
        try:
            return apply_value_transform(name, value, self.strict_conversions)
        except ConversionError as e:
            raise TransformationFailed(rule_id, str(e))

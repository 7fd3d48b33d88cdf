from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .form_state import FieldContainer, LiveForm, container_for
from .rules_engine import EvaluationResult, RuleEngine
from .snapshot import StructuredRule, TemplateSnapshot
from .value_store import ValueStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PassReport:
    evaluation: EvaluationResult
    inserted: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


class VisibilityEngine:
    """Projects rule outcomes onto the live form.

    Structured rules inject or tear down cascaded child fields. Expression
    rules toggle display, ``required`` and ``disabled`` on fields that are
    already present, starting each pass from the authored baseline.
    """

    def __init__(self, snapshot: TemplateSnapshot, engine: RuleEngine | None = None) -> None:
        self.snapshot = snapshot
        self.engine = engine or RuleEngine.from_snapshot(snapshot)

    def apply(self, form: LiveForm, values: ValueStore) -> PassReport:
        report = PassReport(evaluation=EvaluationResult(outcomes=[]))
        # hiding a parent tears down its children, which can change other rules
        for _ in range(len(self.snapshot.fields) + 1):
            self._sync_cascade(form, values, report)
            report.evaluation = self._apply_expressions(form, values)
            if not self._cascade_pending(form, values):
                break

        if report.inserted or report.removed:
            logger.debug(
                "cascade_changed",
                extra={"template_id": self.snapshot.id, "inserted": report.inserted, "removed": report.removed},
            )
        return report

    def _apply_expressions(self, form: LiveForm, values: ValueStore) -> EvaluationResult:
        evaluation = self.engine.evaluate(values)

        for container in form.containers:
            container.state.visible = True
            container.state.required = container.field.required
            container.state.disabled = False

        for rule in self.snapshot.expression_rules:
            outcome = evaluation.outcome(rule.id)
            container = form.container(rule.target_field_id)
            if outcome is None or container is None:
                continue
            self._apply_action(container, rule.action, outcome.fired)
        return evaluation

    def _apply_action(self, container: FieldContainer, action: str, fired: bool) -> None:
        if action == "show":
            container.state.visible = fired
        elif action == "hide":
            container.state.visible = not fired
        elif action == "require":
            container.state.required = fired
        elif action == "disable":
            container.state.disabled = fired

    def _desired_children(self, form: LiveForm, values: ValueStore) -> dict[str, StructuredRule]:
        desired: dict[str, StructuredRule] = {}
        for rule in self.snapshot.structured_rules:
            parent = form.container(rule.parent_field_id)
            if parent is None or not parent.state.visible:
                continue
            if self.engine.structured_fires(rule, values):
                desired[rule.child_field_id] = rule
        return desired

    def _cascade_pending(self, form: LiveForm, values: ValueStore) -> bool:
        desired = self._desired_children(form, values)
        for container in form.containers:
            if not container.is_cascaded:
                continue
            rule = desired.get(container.field_id)
            if rule is None or rule.id != container.source_rule_id:
                return True
        return any(not form.is_present(child_id) for child_id in desired)

    def _sync_cascade(self, form: LiveForm, values: ValueStore, report: PassReport) -> None:
        changed = True
        while changed:
            changed = False
            desired = self._desired_children(form, values)

            for container in list(form.containers):
                if not container.is_cascaded or not form.is_present(container.field_id):
                    continue
                rule = desired.get(container.field_id)
                if rule is None or rule.id != container.source_rule_id:
                    self.teardown(form, values, container.field_id, report.removed)
                    changed = True

            pending = [rule for child_id, rule in desired.items() if not form.is_present(child_id)]
            # each insert lands directly after the parent, so go backwards to keep rule order
            for rule in sorted(pending, key=lambda item: item.sort, reverse=True):
                if not form.is_present(rule.parent_field_id):
                    continue
                child = self.snapshot.field_by_id(rule.child_field_id)
                if child is None:
                    continue
                form.insert_after(
                    rule.parent_field_id,
                    container_for(
                        child,
                        options=rule.child_options,
                        source_rule_id=rule.id,
                        parent_field_id=rule.parent_field_id,
                    ),
                )
                report.inserted.append(child.id)
                changed = True

    def teardown(self, form: LiveForm, values: ValueStore, field_id: str, removed: list[str] | None = None) -> None:
        container = form.remove(field_id)
        if container is None:
            return
        values.delete(field_id)
        if removed is not None:
            removed.append(field_id)
        for dependent in [item for item in form.containers if item.parent_field_id == field_id]:
            self.teardown(form, values, dependent.field_id, removed)

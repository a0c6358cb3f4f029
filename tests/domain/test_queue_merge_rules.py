from __future__ import annotations

import pytest

from dishcourse.domain.queue_rules import MergeDecision, merge_operation


@pytest.mark.parametrize(
    ("existing", "incoming", "expected"),
    [
        (None, "add", MergeDecision("append", "add")),
        (None, "update", MergeDecision("append", "update")),
        (None, "delete", MergeDecision("append", "delete")),
        ("add", "update", MergeDecision("keep", "add")),
        ("add", "delete", MergeDecision("remove")),
        ("update", "update", MergeDecision("replace", "update")),
        ("update", "delete", MergeDecision("replace", "delete")),
        ("delete", "add", MergeDecision("keep", "delete")),
        ("delete", "update", MergeDecision("keep", "delete")),
        ("delete", "delete", MergeDecision("keep", "delete")),
        ("add", "add", MergeDecision("replace", "add")),
        ("update", "add", MergeDecision("replace", "add")),
    ],
)
def test_merge_operation_tabla_completa(existing, incoming, expected) -> None:
    assert merge_operation(existing, incoming) == expected


def test_delete_nunca_se_resucita_desde_la_cola() -> None:
    decisions = [merge_operation("delete", incoming) for incoming in ("add", "update", "delete")]

    assert {decision.operation_type for decision in decisions} == {"delete"}
    assert {decision.action for decision in decisions} == {"keep"}

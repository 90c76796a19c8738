"""
Run-to-run diff — explains why two audit records picked different routes.

Returns None when both runs selected the same route. Score deltas of half
a point or less are treated as noise and dropped.
"""
from __future__ import annotations

from typing import Optional

from stop_engine.schemas.decision import AuditRecord, DiffReport, ScoreDelta

DELTA_NOISE_FLOOR = 0.5


def compute_diff(previous: AuditRecord, current: AuditRecord) -> Optional[DiffReport]:
    if previous.selected_route == current.selected_route:
        return None

    previous_scores = {s.credential_id: s.final_score for s in previous.score_breakdown}
    deltas = []
    for score in current.score_breakdown:
        before = previous_scores.get(score.credential_id, 0.0)
        delta = round(score.final_score - before, 2)
        if abs(delta) > DELTA_NOISE_FLOOR:
            deltas.append(ScoreDelta(
                credential_id=score.credential_id,
                credential_name=score.credential_name,
                previous_score=before,
                new_score=score.final_score,
                delta=delta,
            ))

    if current.hard_rule_override:
        stage, reason = "Rule Evaluation", "Hard rule override changed selection"
    else:
        stage, reason = "Optimization Scoring", "Score optimization resulted in different winner"

    return DiffReport(
        previous_selection=previous.selected_route,
        new_selection=current.selected_route,
        changed_at_stage=stage,
        reason=reason,
        score_deltas=deltas,
    )

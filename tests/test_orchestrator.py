"""
End-to-end tests for the 13-stage routing pipeline.
"""
import pytest

from stop_engine.core.exceptions import PipelineBusyError
from stop_engine.pipeline.orchestrator import StopEngine
from stop_engine.pipeline.stages import STAGE_NAMES
from stop_engine.policy.registry import PolicyRegistry, compute_signature
from stop_engine.schemas.decision import StageStatus
from stop_engine.schemas.policy import (
    ActionType,
    Operator,
    PolicyVersion,
    Rule,
    RuleAction,
    RuleCondition,
    RuleType,
)
from stop_engine.schemas.transaction import (
    Credential,
    RoutingCredential,
    TransactionContext,
    UserProfile,
)

NOW_MS = 1_760_000_000_000


def _clock() -> int:
    return NOW_MS


def _no_sleep(seconds: float) -> None:
    return None


def _make_context(**overrides) -> TransactionContext:
    kwargs = {"amount": 50.0, "merchant": "Luigi's Trattoria", "mcc": 5812, "category": "dining"}
    kwargs.update(overrides)
    return TransactionContext(**kwargs)


def _make_credential(**overrides) -> Credential:
    kwargs = {
        "id": "card_a",
        "name": "Card A",
        "dpan": "**** 1111",
        "type": "credit",
        "network": "visa",
        "limit": 5000.0,
        "balance": 0.0,
        "rewards_by_category": {"dining": 4.0},
    }
    kwargs.update(overrides)
    return Credential(**kwargs)


def _two_card_user() -> UserProfile:
    return UserProfile(
        id="user_1",
        credentials=[
            _make_credential(),
            _make_credential(
                id="card_b",
                name="Card B",
                dpan="**** 2222",
                limit=1000.0,
                balance=800.0,
                rewards_by_category={"dining": 1.0},
            ),
        ],
    )


def _make_registry(rules=None) -> PolicyRegistry:
    rules = rules or []
    version = PolicyVersion(
        version="test-1",
        effective_date=NOW_MS,
        signature_hash=compute_signature(rules),
        rules=rules,
        is_cached=True,
    )
    return PolicyRegistry(versions=[version], current_version="test-1", clock=_clock)


def _make_engine(registry=None, seed=42) -> StopEngine:
    return StopEngine(registry or _make_registry(), seed=seed, clock=_clock, sleep=_no_sleep)


class TestDeterminism:
    def test_identical_runs(self):
        """Same seed, inputs and policy give byte-identical output."""
        first = _make_engine().run_pipeline(_make_context(), _two_card_user())
        second = _make_engine().run_pipeline(_make_context(), _two_card_user())
        assert first.audit_record.model_dump_json() == second.audit_record.model_dump_json()
        assert first.trace.model_dump_json() == second.trace.model_dump_json()

    def test_engine_reseeds_each_run(self):
        engine = _make_engine()
        first = engine.run_pipeline(_make_context(), _two_card_user())
        second = engine.run_pipeline(_make_context(), _two_card_user())
        assert first.audit_record == second.audit_record

    def test_different_seed_different_correlation(self):
        a = _make_engine(seed=1).run_pipeline(_make_context(), _two_card_user())
        b = _make_engine(seed=2).run_pipeline(_make_context(), _two_card_user())
        assert a.audit_record.correlation_id != b.audit_record.correlation_id


class TestSingleCard:
    def test_dining_credit_card(self):
        user = UserProfile(id="user_1", credentials=[
            _make_credential(limit=1000.0, rewards_by_category={"dining": 3.0}),
        ])
        result = _make_engine(registry=PolicyRegistry(clock=_clock)).run_pipeline(_make_context(), user)
        audit = result.audit_record

        assert audit.selected_route == "card_a"
        assert audit.selection_method.type == "AUTO"
        assert audit.replay_seed == 42
        assert audit.policy_version == "2.0.0"
        score = audit.score_breakdown[0]
        assert score.subscores.credit.normalized == 100
        assert score.subscores.rewards.raw == 45
        assert [b.rule_id for b in score.bonuses] == ["rule_dining_boost"]
        assert result.sensitivity == []

        replay = StopEngine(PolicyRegistry(), seed=42).run_pipeline(_make_context(), user)
        assert replay.audit_record.score_breakdown[0].final_score == score.final_score


class TestStages:
    def test_thirteen_stages_in_order(self):
        result = _make_engine().run_pipeline(_make_context(), _two_card_user())
        assert [s.stage_name for s in result.stage_results] == list(STAGE_NAMES)
        assert [s.stage_index for s in result.stage_results] == list(range(13))
        assert len(result.trace.spans) == 13

    def test_offsets_are_contiguous(self):
        result = _make_engine().run_pipeline(_make_context(), _two_card_user())
        stages = result.stage_results
        assert stages[0].start_offset == 0
        for prev, cur in zip(stages, stages[1:]):
            assert cur.start_offset == prev.end_offset
        total = stages[-1].end_offset
        assert result.trace.total_duration_ms == total
        assert result.audit_record.processing_time_ms == total

    def test_logs_inside_stage_window(self):
        result = _make_engine().run_pipeline(_make_context(), _two_card_user())
        for stage in result.stage_results:
            for entry in stage.logs:
                assert stage.start_offset < entry.offset_ms <= stage.end_offset
                assert entry.timestamp == NOW_MS + entry.offset_ms

    def test_drt_stage_skipped_for_plain_card(self):
        result = _make_engine().run_pipeline(_make_context(), _two_card_user())
        assert result.stage_results[9].status == StageStatus.SKIPPED
        assert not result.is_drt

    def test_callback_per_stage(self):
        seen = []
        _make_engine().run_pipeline(_make_context(), _two_card_user(), lambda r, i: seen.append((r.stage_name, i)))
        assert seen == [(name, i) for i, name in enumerate(STAGE_NAMES)]

    def test_policy_metadata(self):
        registry = _make_registry()
        result = _make_engine(registry).run_pipeline(_make_context(), _two_card_user())
        audit = result.audit_record
        signature = registry.get_active_policy().signature_hash
        assert audit.policy_signature_short == signature[7:15]
        assert audit.policy_cache_hit
        assert not audit.pinned_policy
        assert result.stage_results[3].outputs["version"] == "test-1"

    def test_pinned_policy_reported(self):
        registry = PolicyRegistry(clock=_clock)
        registry.pin_policy_version("1.0.0")
        audit = _make_engine(registry).run_pipeline(_make_context(), _two_card_user()).audit_record
        assert audit.pinned_policy
        assert audit.policy_version == "1.0.0"


class TestHardOverride:
    def _rules(self):
        return [
            Rule(
                id="rule_force_b",
                label="Force B for Dining",
                type=RuleType.HARD,
                priority=1,
                condition=RuleCondition(field="mcc", operator=Operator.EQ, value=5812),
                action=RuleAction(type=ActionType.FORCE, target_credential_id="card_b", reason="Dining goes to B"),
            ),
            Rule(
                id="rule_exclude_b",
                label="Exclude B",
                type=RuleType.HARD,
                priority=2,
                condition=RuleCondition(field="id", operator=Operator.EQ, value="card_b"),
                action=RuleAction(type=ActionType.EXCLUDE, reason="B is excluded"),
            ),
        ]

    def test_force_beats_exclusion(self):
        result = _make_engine(_make_registry(self._rules())).run_pipeline(_make_context(), _two_card_user())
        audit = result.audit_record

        assert audit.selected_route == "card_b"
        assert audit.selected_dpan == "**** 2222"
        assert audit.hard_rule_override
        assert audit.selection_method.type == "FORCED"
        assert audit.selection_method.rule_id == "rule_force_b"
        assert [v.credential_id for v in audit.violations_overridden] == ["card_b"]
        assert "card_b" not in [e.credential_id for e in audit.excluded_credentials]

    def test_shadow_optimization(self):
        audit = _make_engine(_make_registry(self._rules())).run_pipeline(_make_context(), _two_card_user()).audit_record
        shadow = audit.shadow_optimization
        assert shadow.would_have_selected == "card_a"
        assert shadow.actual_selected == "card_b"
        assert shadow.reason == "Hard rule override by Force B for Dining"


class TestDRT:
    def _drt_user(self, children) -> UserProfile:
        return UserProfile(
            id="user_1",
            routing_credentials=[RoutingCredential(
                id="drt_everyday",
                name="Everyday Router",
                dpan="**** 9000",
                network="visa",
                children=children,
            )],
        )

    def test_resolves_child(self):
        children = [
            _make_credential(id="child_1", name="Child One", dpan="**** 3001"),
            _make_credential(id="child_2", name="Child Two", dpan="**** 3002", rewards_by_category={}),
        ]
        result = _make_engine().run_pipeline(_make_context(), self._drt_user(children))
        audit = result.audit_record
        assert audit.is_drt
        assert audit.drt_id == "drt_everyday"
        assert audit.resolved_child_credential == "child_1"
        assert audit.selected_dpan == "**** 3001"
        assert result.stage_results[9].status == StageStatus.COMPLETED

    def test_no_eligible_children_is_a_stage_error(self):
        children = [_make_credential(id="child_1", name="Child One", is_eligible=False)]
        result = _make_engine().run_pipeline(_make_context(), self._drt_user(children))

        drt_stage = result.stage_results[9]
        assert drt_stage.status == StageStatus.ERROR
        assert drt_stage.errors[0].code == "STAGE_ERROR"
        assert "no eligible child" in drt_stage.errors[0].message
        assert [s.status for i, s in enumerate(result.stage_results) if i != 9] == [StageStatus.COMPLETED] * 12
        assert len(result.audit_record.errors) == 1
        assert result.audit_record.selected_route == "drt_everyday"
        assert result.audit_record.resolved_child_credential is None


class TestConcurrency:
    def test_reentry_rejected(self):
        engine = _make_engine()

        def reenter(result, index):
            engine.run_pipeline(_make_context(), _two_card_user())

        with pytest.raises(PipelineBusyError):
            engine.run_pipeline(_make_context(), _two_card_user(), reenter)

        # lock released afterwards
        assert engine.run_pipeline(_make_context(), _two_card_user()).selected_route == "card_a"

    def test_registry_edits_not_observed_mid_run(self):
        registry = _make_registry()

        def mutate(result, index):
            if index == 0:
                registry.add_rule(Rule(
                    id="rule_block_all",
                    label="Block All",
                    type=RuleType.HARD,
                    condition=RuleCondition(field="amount", operator=Operator.GT, value=0),
                    action=RuleAction(type=ActionType.BLOCK, reason="blocked"),
                ))

        result = _make_engine(registry).run_pipeline(_make_context(), _two_card_user(), mutate)
        assert result.audit_record.excluded_credentials == []
        assert len(registry.get_active_policy().rules) == 1

"""
Risk engine: point model, tolerance scaling, veto and PRNG consumption.
"""
from stop_engine.core.prng import PRNG
from stop_engine.schemas.decision import RiskAssessment
from stop_engine.schemas.transaction import Credential, TransactionContext, UserProfile
from stop_engine.scoring.risk import (
    AmountThresholds,
    RiskEngineConfig,
    assess_all_risks,
    assess_risk,
    get_lowest_risk_credential,
)


def _make_context(**overrides) -> TransactionContext:
    kwargs = {"amount": 50.0, "merchant": "Corner Cafe", "mcc": 5812, "category": "dining"}
    kwargs.update(overrides)
    return TransactionContext(**kwargs)


def _make_credential(**overrides) -> Credential:
    kwargs = {
        "id": "card_a",
        "name": "Card A",
        "dpan": "**** 1111",
        "type": "credit",
        "network": "visa",
        "limit": 10000.0,
    }
    kwargs.update(overrides)
    return Credential(**kwargs)


def _make_user(**overrides) -> UserProfile:
    kwargs = {"id": "user_1"}
    kwargs.update(overrides)
    return UserProfile(**kwargs)


def _risky_context() -> TransactionContext:
    return _make_context(
        amount=2000.0,
        country="GB",
        is_in_person=False,
        risk_flags=["velocity_spike", "geo_anomaly", "device_change"],
    )


class TestPointModel:
    def test_quiet_transaction_is_low_risk(self):
        a = assess_risk(_make_credential(), _make_context(), _make_user(), PRNG(42))
        assert a.risk_score <= 0.05
        assert a.risk_factors == []
        assert not a.veto_recommendation
        assert a.veto_reason is None

    def test_factors_are_reported(self):
        a = assess_risk(_make_credential(), _risky_context(), _make_user(), PRNG(42))
        assert a.risk_factors[:3] == ["High amount ($2000)", "International (GB)", "Card not present"]
        assert "Velocity spike" in a.risk_factors
        assert "Geographic anomaly" in a.risk_factors
        assert "New device" in a.risk_factors

    def test_medium_amount_tier(self):
        a = assess_risk(_make_credential(), _make_context(amount=800.0), _make_user(), PRNG(1))
        assert a.risk_factors == ["Medium amount ($800)"]

    def test_credential_factors(self):
        near_limit = _make_credential(limit=1000.0, balance=950.0)
        assert "Near credit limit" in assess_risk(near_limit, _make_context(), _make_user(), PRNG(1)).risk_factors

        low_debit = _make_credential(type="debit", balance=60.0)
        assert "Low debit balance" in assess_risk(low_debit, _make_context(), _make_user(), PRNG(1)).risk_factors

        discover = _make_credential(network="discover")
        assert "Lower network acceptance" in assess_risk(discover, _make_context(), _make_user(), PRNG(1)).risk_factors

        amex_abroad = _make_credential(network="amex")
        factors = assess_risk(amex_abroad, _make_context(country="FR"), _make_user(), PRNG(1)).risk_factors
        assert "Amex international" in factors

    def test_scores_rounded_to_three_places(self):
        a = assess_risk(_make_credential(), _risky_context(), _make_user(risk_tolerance="high"), PRNG(9))
        assert round(a.risk_score, 3) == a.risk_score
        assert round(a.decline_probability, 3) == a.decline_probability


class TestToleranceAndVeto:
    def test_low_tolerance_scores_higher(self):
        low = assess_risk(_make_credential(), _risky_context(), _make_user(risk_tolerance="low"), PRNG(5))
        high = assess_risk(_make_credential(), _risky_context(), _make_user(risk_tolerance="high"), PRNG(5))
        assert low.risk_score > high.risk_score

    def test_risky_transaction_vetoed(self):
        a = assess_risk(_make_credential(), _risky_context(), _make_user(risk_tolerance="low"), PRNG(5))
        assert a.veto_recommendation
        assert a.veto_reason.startswith("Risk ")
        assert a.veto_reason.endswith("exceeds threshold 75%")

    def test_configurable_threshold(self):
        config = RiskEngineConfig(veto_threshold=0.0)
        a = assess_risk(_make_credential(), _make_context(), _make_user(), PRNG(42), config)
        assert a.veto_recommendation
        assert a.veto_reason.endswith("exceeds threshold 0%")

    def test_configurable_amount_tiers(self):
        config = RiskEngineConfig(amount_thresholds=AmountThresholds(low=5, medium=10, high=20))
        a = assess_risk(_make_credential(), _make_context(), _make_user(), PRNG(42), config)
        assert a.risk_factors == ["High amount ($50)"]


class TestDeterminism:
    def test_exactly_two_draws_per_assessment(self):
        used = PRNG(7)
        assess_risk(_make_credential(), _make_context(), _make_user(), used)
        reference = PRNG(7)
        reference.random()
        reference.random()
        assert used.random() == reference.random()

    def test_same_seed_same_assessment(self):
        a = assess_risk(_make_credential(), _risky_context(), _make_user(), PRNG(123))
        b = assess_risk(_make_credential(), _risky_context(), _make_user(), PRNG(123))
        assert a == b

    def test_assess_all_keyed_in_order(self):
        creds = [_make_credential(), _make_credential(id="card_b", name="Card B")]
        result = assess_all_risks(creds, _make_context(), _make_user(), PRNG(3))
        assert list(result) == ["card_a", "card_b"]


class TestLowestRisk:
    def _assessment(self, cid: str, score: float, veto: bool = False) -> RiskAssessment:
        return RiskAssessment(credential_id=cid, risk_score=score, decline_probability=score, veto_recommendation=veto)

    def test_skips_vetoed_and_ineligible(self):
        assessments = {
            "a": self._assessment("a", 0.1, veto=True),
            "b": self._assessment("b", 0.3),
            "c": self._assessment("c", 0.2),
            "d": self._assessment("d", 0.05),
        }
        assert get_lowest_risk_credential(assessments, ["a", "b", "c"]) == "c"

    def test_none_available(self):
        assert get_lowest_risk_credential({}, ["a"]) is None

"""Boundary validation of ReceiptClaim and AwardDecision."""

import pytest
from pydantic import ValidationError

from app.graph.state import INTERNAL_ERROR_REASON, AwardDecision, ReceiptClaim

from conftest import PNG_DATA_URL


def _claim(**overrides):
    data = {"photo": PNG_DATA_URL, "productName": "ANSIOLIFE", "quantity": 2, "starsPerUnit": 50}
    data.update(overrides)
    return ReceiptClaim.model_validate(data)


def test_claim_accepts_wire_names():
    claim = _claim()
    assert claim.product_name == "ANSIOLIFE"
    assert claim.stars_per_unit == 50
    assert claim.max_award == 100
    assert claim.media_type == "image/png"


def test_claim_accepts_python_names():
    claim = ReceiptClaim(photo=PNG_DATA_URL, product_name="  Ansiolife ", quantity=1, stars_per_unit=0)
    assert claim.product_name == "Ansiolife"
    assert claim.max_award == 0


@pytest.mark.parametrize("overrides", [
    {"quantity": 0},
    {"quantity": -3},
    {"starsPerUnit": -1},
    {"productName": "   "},
    {"photo": "not a data url"},
    {"photo": "data:application/pdf;base64,JVBERi0xLjQ="},
    {"photo": "data:image/png;base64,@@@not-base64@@@"},
])
def test_claim_rejects_invalid_input(overrides):
    with pytest.raises(ValidationError):
        _claim(**overrides)


def test_claim_requires_every_field():
    with pytest.raises(ValidationError):
        ReceiptClaim.model_validate({"photo": PNG_DATA_URL, "productName": "X", "quantity": 1})


def test_decision_serializes_with_wire_names():
    decision = AwardDecision(stars_awarded=100, reason="ok")
    assert decision.model_dump(by_alias=True) == {"starsAwarded": 100, "reason": "ok"}
    assert decision.granted


def test_decision_never_negative_and_reason_required():
    with pytest.raises(ValidationError):
        AwardDecision(stars_awarded=-1, reason="no")
    with pytest.raises(ValidationError):
        AwardDecision(stars_awarded=0, reason="")


def test_internal_error_decision():
    decision = AwardDecision.internal_error()
    assert decision.stars_awarded == 0
    assert decision.reason == INTERNAL_ERROR_REASON
    assert not decision.granted

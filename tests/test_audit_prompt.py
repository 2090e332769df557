"""Rendering of the receipt audit prompt."""

from app.graph.nodes.audit import build_messages
from app.graph.state import ReceiptClaim
from app.prompts.audit_prompt import AUDIT_SYSTEM_PROMPT, render_audit_prompt

from conftest import PNG_DATA_URL


def test_render_includes_claim_fields_and_total():
    text = render_audit_prompt("ANSIOLIFE", 2, 50)

    assert "2 unit(s) of the product 'ANSIOLIFE'" in text
    assert "- Product: ANSIOLIFE" in text
    assert "- Quantity: 2" in text
    assert "- Stars per unit: 50" in text
    assert "2 * 50 = 100 stars" in text


def test_render_leaves_braces_in_product_name_alone():
    text = render_audit_prompt("Gel {extra}", 1, 10)
    assert "'Gel {extra}'" in text


def test_system_prompt_documents_output_contract_and_matching():
    assert '"starsAwarded"' in AUDIT_SYSTEM_PROMPT
    assert '"reason"' in AUDIT_SYSTEM_PROMPT
    assert "Ansiolife 20mg" in AUDIT_SYSTEM_PROMPT


def test_build_messages_attaches_image_as_data_url():
    claim = ReceiptClaim(photo=PNG_DATA_URL, product_name="ANSIOLIFE", quantity=2, stars_per_unit=50)
    system, human = build_messages(claim)

    assert system.content == AUDIT_SYSTEM_PROMPT
    text_part, image_part = human.content
    assert text_part["type"] == "text"
    assert text_part["text"] == render_audit_prompt("ANSIOLIFE", 2, 50)
    assert image_part == {"type": "image_url", "image_url": {"url": PNG_DATA_URL}}

"""
Prompt templates for the receipt audit node.

The system prompt fixes the auditor role and the JSON output contract; the
user prompt is rendered per claim with the product, quantity and reward rate.
The receipt image itself travels next to the rendered text as an image part.
"""

AUDIT_SYSTEM_PROMPT = """\
You are an expert auditor for the StarCart loyalty program. Users upload a
photograph of a purchase receipt to earn stars, and your job is to verify that
the receipt supports what they claim to have bought.

Return ONLY a valid JSON object (no markdown fences, no commentary) with this
exact schema:

{
  "starsAwarded": <non-negative integer>,
  "reason": "<short explanation of the decision>"
}

Rules:
1. Product names match approximately: an exact match is not required. A brand
   name, prefix or substring of the printed line counts as a match
   (e.g. "ANSIOLIFE" matches a printed "Ansiolife 20mg").
2. If both the product and the quantity are clearly shown on the receipt,
   award exactly quantity * stars per unit and say the validation succeeded.
3. Otherwise award 0 stars and give the specific cause in "reason", such as
   "Product not found on receipt", "Quantity does not match the receipt" or
   "Receipt image is not readable".
4. Never award a partial or negative amount: the award is either 0 or the full
   quantity * stars per unit.
5. Do NOT include any text outside the JSON object.
"""

AUDIT_USER_TEMPLATE = """\
Audit instructions:
1. The user states they bought {quantity} unit(s) of the product '{product_name}'.
2. Carefully examine the attached receipt image.
3. Check that the product '{product_name}' and the quantity {quantity} both appear
   on the receipt. Name recognition must be exact or very close.
4. Decide:
   - If the information matches: award {quantity} * {stars_per_unit} = {total_stars} stars
     and state that the validation succeeded.
   - If it does not match or the image is not readable: award 0 stars and briefly
     explain why the validation failed.

User-provided data:
- Product: {product_name}
- Quantity: {quantity}
- Stars per unit: {stars_per_unit}

The receipt image to analyse is attached.
"""


def render_audit_prompt(product_name: str, quantity: int, stars_per_unit: int) -> str:
    """Fill the audit template for one claim."""
    return AUDIT_USER_TEMPLATE.format(
        product_name=product_name,
        quantity=quantity,
        stars_per_unit=stars_per_unit,
        total_stars=quantity * stars_per_unit,
    )

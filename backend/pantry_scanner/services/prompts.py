"""Prompt text for the extraction calls made by the pipeline."""

EXTRACTION_PROMPT = """You are a receipt extraction expert. Extract all information from this grocery receipt image and return it as valid JSON.

Extract the following information:
- store_name (string): Name of the store
- store_location (string): Store address or location if visible
- purchase_date (string): Date of purchase in YYYY-MM-DD format
- items (array of objects): Each item with:
  - name (string): Item name/description (cleaned up and normalized)
  - quantity (string): Quantity purchased (e.g., "2 lb", "1 dozen", "3 cans")
  - price (number): Item price in dollars
  - unit_price (number): Price per unit if calculable
  - category (string): REQUIRED - One of: "produce", "dairy", "meat", "pantry", "frozen", or "non_food"
  - is_food (boolean): REQUIRED - true for food/grocery items, false for bags, gift wrap, household items
  - source_text (string): EXACT text from the receipt for this item (including any codes/abbreviations)
  - line_number (number): Sequential line number (1, 2, 3...) in top-to-bottom order
  - position_percent (number): Vertical position of this item (0 = first item line, 100 = last item line)
  - is_first_item (boolean): true only for the first item on the receipt
  - is_last_item (boolean): true only for the last item on the receipt
  - is_anchor_mid (boolean): true for 2-3 distinctive items in the middle of the receipt whose position you are most sure of
  - consolidated_count (number): only when you merged repeated lines, how many lines were merged
  - consolidated_details (string): only when merged, e.g. "Combined 2 separate entries"
  - consolidated_sources (array): only when merged, one {"source_text", "quantity", "price"} per merged line
- subtotal (number): Subtotal before tax
- tax (number): Tax amount
- total (number): Total amount paid
- payment_method (string): Payment method if visible (e.g., "VISA", "CASH")
- receipt_number (string): Receipt or transaction number if visible
- quality_warnings (array of strings): problems with the image (upside down, blurry, cut off, total not visible)

CATEGORY GUIDELINES:
- "produce": Fresh fruits, vegetables
- "dairy": Milk, cheese, yogurt, butter, cream, eggs
- "meat": All meats, poultry, seafood
- "pantry": Shelf-stable items (flour, rice, pasta, bread, canned goods, spices, sauces)
- "frozen": Frozen foods, ice cream
- "non_food": Bags, gift wrap, household items, cleaning supplies, paper products

IMPORTANT INSTRUCTIONS:
1. Parse each line item carefully - extract item name, quantity, and price
2. Convert all prices to numbers (remove $ signs)
3. Number EVERY item line; never skip a number, even for items you are unsure about
4. If the exact same product appears on separate lines, merge them into one item with the summed price and combined quantity, and fill in the consolidated_* fields. Do NOT merge items that differ in size, flavor or variant
5. INCLUDE non-food items but mark them with is_food: false and category: "non_food"
6. For source_text: Include the EXACT text as it appears on the receipt (e.g., "CHK BRE 2LB" not "Chicken Breast")
7. Return ONLY valid JSON - no explanations

If a field is not found in the receipt, omit it from the JSON (don't use null)."""

PRESCAN_PROMPT = """Look at this receipt quickly. Do NOT extract items.
Return ONLY a JSON object:
{"store_name": "Store name from the header or null", "estimated_item_count": number of purchased item lines you can see}"""


def build_extraction_prompt(learning_context: str = "", ocr_context: str = "") -> str:
    parts = [EXTRACTION_PROMPT]
    if ocr_context:
        parts.append(ocr_context)
    if learning_context:
        parts.append(learning_context)
    parts.append("Extract the receipt data from this image. Return the data as JSON:")
    return "\n\n".join(parts)


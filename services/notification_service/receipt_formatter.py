from typing import Any, Dict

RECEIPT_WIDTH = 40


def _row(label: str, value: str) -> str:
    return f"{label.ljust(RECEIPT_WIDTH - len(value) - 1)} {value}"


def receipt_subject(receipt_number: str, receipt_data: Dict[str, Any]) -> str:
    branch = receipt_data.get("branch") or "Spa"
    return f"Your receipt {receipt_number} from {branch}"


def format_receipt(receipt_number: str, receipt_data: Dict[str, Any]) -> str:
    """Plain-text receipt for email and the till printer."""
    transaction = receipt_data.get("transaction") or {}
    customer = receipt_data.get("customer") or {}

    lines = [
        (receipt_data.get("branch") or "").center(RECEIPT_WIDTH),
        "=" * RECEIPT_WIDTH,
        _row("Receipt", receipt_number),
        _row("Transaction", str(transaction.get("transaction_number", ""))),
    ]
    if customer.get("name"):
        lines.append(_row("Customer", customer["name"]))
    if receipt_data.get("staff"):
        lines.append(_row("Served by", receipt_data["staff"]))
    lines.append("-" * RECEIPT_WIDTH)

    for item in receipt_data.get("items") or []:
        lines.append(_row(f"{item['quantity']} x {item['name']}", item["total_price"]))
        if item.get("staff"):
            lines.append(f"  with {item['staff']}")

    lines.append("-" * RECEIPT_WIDTH)
    lines.append(_row("Subtotal", transaction.get("subtotal", "0.00")))
    if transaction.get("discount_amount") not in (None, "0", "0.00"):
        lines.append(_row("Discount", f"-{transaction['discount_amount']}"))
    lines.append(_row("VAT", transaction.get("tax_amount", "0.00")))
    if transaction.get("tip_amount") not in (None, "0", "0.00"):
        lines.append(_row("Tip", transaction["tip_amount"]))
    lines.append(_row("TOTAL (KES)", transaction.get("total_amount", "0.00")))
    lines.append("=" * RECEIPT_WIDTH)

    payment = str(transaction.get("payment_method", "")).upper()
    if transaction.get("external_payment_ref"):
        payment = f"{payment} {transaction['external_payment_ref']}"
    lines.append(_row("Paid by", payment))
    lines.append("")
    lines.append("Thank you for visiting!".center(RECEIPT_WIDTH))
    return "\n".join(lines)

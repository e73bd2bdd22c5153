from io import BytesIO

from openpyxl import Workbook

from .ledger import list_fee_payments

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADERS = [
    "Fee Payment ID", "Student", "Username", "Program", "Session", "Semester",
    "Total Amount", "Amount Paid", "Remaining", "Status",
    "Transaction ID", "Amount", "Paid On", "Mode", "Receipt No", "Remarks",
]


def export_payments_xlsx(actor, status=None, session_id=None):
    """Build the payment ledger workbook: one row per transaction. Returns the xlsx bytes."""
    rows = list_fee_payments(actor, status=status, session_id=session_id)

    wb = Workbook()
    ws = wb.active
    ws.title = "Payments"
    ws.append(HEADERS)
    for fp in rows:
        fs = fp.fee_structure
        student = fp.student
        head = [
            fp.payment_id,
            getattr(student, "full_name", None) or "",
            getattr(student, "username", None) or "",
            getattr(fs.program, "program_name", None) or "",
            getattr(fs.session, "session_name", None) or "",
            fs.semester,
            fs.total_amount,
            fp.amount_paid,
            max(0, fs.total_amount - fp.amount_paid),
            fp.status,
        ]
        # Ledgers without transactions still get a row so balances are visible
        if not fp.transactions:
            ws.append(head + [None, None, None, None, None, None])
            continue
        for t in fp.transactions:
            ws.append(head + [t.transaction_id, t.amount, t.paid_on, t.mode, t.receipt_no, t.remarks or ""])

    ws.freeze_panes = "A2"
    bio = BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio.read()

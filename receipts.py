import time

from errors import InvalidReceiptError

RECEIPT_PREFIX = 'receipt-'


def vote_doc_id(national_id, group_id):
    return f'{national_id}_{group_id}'


def make_receipt(national_id, group_id, timestamp_ms=None):
    """
    Builds the receipt handed to a voter after a successful vote. The receipt
    only references the vote's key; it is not signed.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f'{RECEIPT_PREFIX}{national_id}-{group_id}-{timestamp_ms}'


def parse_receipt(receipt):
    """Returns (national_id, group_id) for a receipt string."""
    if not receipt or not receipt.startswith(RECEIPT_PREFIX):
        raise InvalidReceiptError("Invalid receipt format.")
    parts = receipt.split('-')
    if len(parts) < 4:
        raise InvalidReceiptError("Invalid receipt format.")
    national_id, group_id = parts[1], parts[2]
    if not national_id or not group_id:
        raise InvalidReceiptError("Invalid receipt format.")
    return national_id, group_id

"""
Logging setup shared by the web app and the AI flows.
"""
import logging
import re
import sys

LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'

NATIONAL_ID_PATTERN = re.compile(r'\b(\d{4})\d{8}(\d{4})\b')


class NationalIdFilter(logging.Filter):
    """Masks the middle digits of 16-digit national IDs in log output."""

    def filter(self, record):
        if isinstance(record.msg, str):
            record.msg = NATIONAL_ID_PATTERN.sub(r'\1********\2', record.msg)
        if record.args:
            if isinstance(record.args, dict):
                return True
            record.args = tuple(
                NATIONAL_ID_PATTERN.sub(r'\1********\2', arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level='INFO'):
    root = logging.getLogger()
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(level)
    for handler in root.handlers:
        if getattr(handler, '_tora_handler', False):
            return root
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(NationalIdFilter())
    handler._tora_handler = True
    root.addHandler(handler)
    # Werkzeug logs every request at INFO; keep it to warnings.
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    return root

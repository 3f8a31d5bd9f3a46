"""PII masking for log output."""

import logging
import re

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
# +211 followed by nine digits, or a standalone ten-digit number
PHONE_PATTERN = re.compile(
    r"\+211[-.\s]?\d{3}[-.\s]?\d{3}[-.\s]?\d{3}(?!\d)"
    r"|(?<![\d+])\d{3}[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"
)


def mask_pii(text: str) -> str:
    if "@" in text:
        text = EMAIL_PATTERN.sub("[EMAIL]", text)
    if any(c.isdigit() for c in text):
        text = PHONE_PATTERN.sub("[PHONE]", text)
    return text


class PIIFilter(logging.Filter):
    """Masks rider and driver contact details in the message and its string args."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_pii(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(mask_pii(a) if isinstance(a, str) else a for a in record.args)
        return True

import json
import logging

from orderflow.core.logging_config import (
    SecurityFilter,
    StructuredFormatter,
    get_logger,
    order_context,
)


class Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.setFormatter(StructuredFormatter("orderflow-test"))
        self.addFilter(SecurityFilter())
        self.lines = []

    def emit(self, record):
        self.lines.append(json.loads(self.format(record)))


def capture(name):
    handler = Capture()
    base = logging.getLogger(name)
    base.handlers = [handler]
    base.setLevel(logging.DEBUG)
    base.propagate = False
    return handler


def test_order_fields_are_promoted_and_secrets_redacted():
    handler = capture("orderflow.test.promote")
    get_logger("orderflow.test.promote").info(
        "Item moved", extra={'extra_fields': {'order_number': "1001", 'item_id': 7, 'api_key': "k-1", 'step': 2}})

    line = handler.lines[0]
    assert line["service"] == "orderflow-test"
    assert line["order"] == {"order_number": "1001", "item_id": 7}
    assert line["custom"] == {"api_key": "***REDACTED***", "step": 2}


def test_order_context_tags_nested_records():
    handler = capture("orderflow.test.context")
    logger = get_logger("orderflow.test.context", component="intake")
    with order_context(order_id=3, order_number="WC-774"):
        with order_context(item_id=9):
            logger.warning("Enrichment skipped")
    logger.info("Outside")

    assert handler.lines[0]["order"] == {"order_id": 3, "order_number": "WC-774", "item_id": 9}
    assert handler.lines[0]["custom"] == {"component": "intake"}
    assert "order" not in handler.lines[1]


def test_errors_carry_their_title():
    from orderflow.domain.errors import DuplicateOrderError

    handler = capture("orderflow.test.errors")
    try:
        raise DuplicateOrderError("Order number already exists in Order Flow")
    except DuplicateOrderError:
        get_logger("orderflow.test.errors").exception("Import failed")

    error = handler.lines[0]["error"]
    assert (error["type"], error["title"]) == ("DuplicateOrderError", "Duplicate Order")

import io
import json
import logging
from decimal import Decimal

import pytest

from fxoffice.logging_config import configure_logging, reset_logging


@pytest.fixture(autouse=True)
def clean_logging():
    reset_logging()
    yield
    reset_logging()


def test_json_lines_carry_level_logger_and_extras() -> None:
    stream = io.StringIO()
    configure_logging(json_output=True, stream=stream)

    logging.getLogger("fxoffice.ledger").info(
        "Till %s settled", "T1", extra={"till_id": "T1", "amount": Decimal("540.00")}
    )

    record = json.loads(stream.getvalue().strip())
    assert record["level"] == "INFO"
    assert record["logger"] == "fxoffice.ledger"
    assert record["message"] == "Till T1 settled"
    assert record["till_id"] == "T1"
    assert record["amount"] == "540.00"


def test_second_configure_is_a_no_op() -> None:
    first, second = io.StringIO(), io.StringIO()
    configure_logging(json_output=True, stream=first)
    configure_logging(json_output=False, stream=second)

    logging.getLogger("fxoffice.customers").warning("Customer flagged")

    assert len(logging.getLogger("fxoffice").handlers) == 1
    assert json.loads(first.getvalue())["level"] == "WARNING"
    assert second.getvalue() == ""


def test_reset_allows_reconfiguration() -> None:
    configure_logging(json_output=True, stream=io.StringIO())
    reset_logging()
    assert logging.getLogger("fxoffice").handlers == []

    stream = io.StringIO()
    configure_logging(stream=stream)
    logging.getLogger("fxoffice.tills").info("Till T1 opened")
    assert stream.getvalue().rstrip().endswith("INFO fxoffice.tills: Till T1 opened")

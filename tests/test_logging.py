"""
日志脱敏测试
"""
import pytest

from mf_core.utils.logger import MarketFlowProcessor, PIIMaskingProcessor


@pytest.fixture
def masker():
    return PIIMaskingProcessor()


class TestPIIMasking:

    @pytest.mark.parametrize("raw,expected", [
        ("payout to ravi.kumar@okaxis", "payout to r***@okaxis"),
        ("mail asha.rao@example.com", "mail a***@example.com"),
        ("account 123456789012", "account *****9012"),
        ("key_secret: xyz789", "key_secret=***MASKED***"),
        ("signature=abc123def", "signature=***MASKED***"),
    ])
    def test_masks_string_values(self, masker, raw, expected):
        assert masker(None, "info", {"detail": raw})["detail"] == expected

    def test_business_identifiers_untouched(self, masker):
        event = {"order_number": "MF12345678901234", "awb": "123456789012", "order_id": 42}
        assert masker(None, "info", dict(event)) == event

    def test_nested_values(self, masker):
        event = {"payment_details": {"upi_id": "asha@ybl", "notes": ["acct 000011112222"]}}
        masked = masker(None, "info", event)
        assert masked["payment_details"]["upi_id"] == "a***@ybl"
        assert masked["payment_details"]["notes"] == ["acct *****2222"]


def test_event_renamed_to_action():
    event = MarketFlowProcessor()(None, "info", {"event": "Order created"})
    assert event["action"] == "Order created"
    assert "event" not in event
    assert "ts" in event

"""
Tests for the outbound WhatsApp gateway.

The PyWa client is a MagicMock; only the arguments it receives and the
SendResult the gateway builds are checked.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from app.services.gateway import MAX_TEXT_LENGTH, SendResult, WhatsAppGateway, normalize_phone


@pytest.fixture
def wa():
    client = MagicMock()
    client.send_text.return_value = SimpleNamespace(id="wamid.HBgM")
    client.send_image.return_value = SimpleNamespace(id="wamid.IMG")
    client.send_template.return_value = SimpleNamespace(id="wamid.TPL")
    return client


@pytest.fixture
def gateway(wa):
    return WhatsAppGateway(lambda: wa)


class TestNormalizePhone:
    @pytest.mark.parametrize("raw,expected", [
        ("9876543210", "919876543210"),
        ("+91 98765-43210", "919876543210"),
        ("919876543210", "919876543210"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_phone(raw) == expected


class TestSendText:
    def test_success(self, gateway, wa):
        result = gateway.send_text("+91 98765 43210", "Flat 20% off today!")

        assert result == SendResult(success=True, message_id="wamid.HBgM")
        wa.send_text.assert_called_once_with(to="919876543210", text="Flat 20% off today!")

    def test_long_text_truncated(self, gateway, wa):
        gateway.send_text("9876543210", "x" * (MAX_TEXT_LENGTH + 50))

        assert len(wa.send_text.call_args.kwargs["text"]) == MAX_TEXT_LENGTH

    def test_api_error_becomes_failed_result(self, gateway, wa):
        wa.send_text.side_effect = RuntimeError("(#131030) Recipient phone number not in allowed list")

        result = gateway.send_text("9876543210", "hi")

        assert result.success is False
        assert "131030" in result.error

    def test_invalid_phone(self, gateway, wa):
        result = gateway.send_text("", "hi")

        assert result.success is False
        assert result.error == "Invalid phone number"
        wa.send_text.assert_not_called()

    def test_client_not_configured(self):
        gateway = WhatsAppGateway(lambda: None)

        result = gateway.send_text("9876543210", "hi")

        assert result.success is False
        assert result.error == "WhatsApp client not configured"

    def test_client_factory_error(self):
        def broken_factory():
            raise ValueError("bad token")

        result = WhatsAppGateway(broken_factory).send_text("9876543210", "hi")

        assert result.success is False
        assert "bad token" in result.error


class TestOtherKinds:
    def test_buttons(self, gateway, wa):
        buttons = [
            {"id": "checkout", "title": "Complete Order"},
            {"id": "view_cart", "title": "View Cart"},
        ]

        result = gateway.send_buttons("9876543210", "Your cart is waiting", buttons)

        assert result.success is True
        kwargs = wa.send_text.call_args.kwargs
        assert kwargs["to"] == "919876543210"
        assert len(kwargs["buttons"]) == 2
        assert kwargs["buttons"][0].title == "Complete Order"
        assert kwargs["buttons"][0].callback_data == "checkout"

    def test_image_with_caption(self, gateway, wa):
        result = gateway.send_image("9876543210", "https://cdn.example.com/sale.jpg", "New arrivals")

        assert result.message_id == "wamid.IMG"
        wa.send_image.assert_called_once_with(
            to="919876543210", image="https://cdn.example.com/sale.jpg", caption="New arrivals"
        )

    def test_template_without_params(self, gateway, wa):
        result = gateway.send_template("9876543210", "order_update")

        assert result.message_id == "wamid.TPL"
        kwargs = wa.send_template.call_args.kwargs
        assert kwargs["name"] == "order_update"
        assert kwargs["params"] is None

    def test_template_params_are_positional(self, gateway, wa):
        with patch("pywa.types.templates.BodyText") as body_text:
            gateway.send_template("9876543210", "diwali_offer", ["Asha", 20])

        body_text.params.assert_called_once_with(param1="Asha", param2="20")
        assert wa.send_template.call_args.kwargs["params"] == [body_text.params.return_value]


class TestClientCaching:
    def test_client_built_once(self, wa):
        factory = MagicMock(return_value=wa)
        gateway = WhatsAppGateway(factory, client_ttl_seconds=3600)

        gateway.send_text("9876543210", "one")
        gateway.send_text("9876543210", "two")

        assert factory.call_count == 1

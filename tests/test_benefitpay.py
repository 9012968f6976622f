import base64
import hashlib
import hmac

import pytest

import benefitpay
from benefitpay import (
    WalletClient,
    WalletCredentials,
    generate_signature,
    load_wallet_credentials,
    new_reference_number,
    result_from_status,
    secure_hash_for_sdk,
    signature_for_status,
    signature_string,
    signed_sdk_params,
)
from gateway import FAILED, PAID, PENDING, GatewayError

SECRET = "wallet-secret"


def test_signature_string_sorts_and_drops_excluded_fields():
    params = {"reference_id": " R1 ", "merchant_id": 3186, "lang": "en", "secure_hash": "x"}
    assert signature_string(params) == 'merchant_id="3186",reference_id="R1"'


def test_generate_signature_is_base64_hmac():
    params = {"merchant_id": "3186", "reference_id": "R1"}
    expected = base64.b64encode(
        hmac.new(SECRET.encode(), b'merchant_id="3186",reference_id="R1"', hashlib.sha256).digest()
    ).decode()
    assert generate_signature(params, SECRET) == expected
    assert signature_for_status(params, SECRET) == expected


def test_required_fields():
    with pytest.raises(ValueError, match="reference_id"):
        signature_for_status({"merchant_id": "3186"}, SECRET)
    with pytest.raises(ValueError, match="transactionCurrency"):
        secure_hash_for_sdk(
            {"merchantId": "1", "appId": "2", "transactionAmount": "3.000", "referenceNumber": "R"},
            SECRET,
        )


def test_missing_credentials_are_listed(monkeypatch):
    monkeypatch.setenv("BENEFITPAY_WALLET_MERCHANT_ID", "3186")
    monkeypatch.delenv("BENEFITPAY_WALLET_APP_ID", raising=False)
    monkeypatch.delenv("BENEFITPAY_WALLET_SECRET_KEY", raising=False)
    with pytest.raises(GatewayError) as excinfo:
        load_wallet_credentials()
    assert "BENEFITPAY_WALLET_APP_ID" in excinfo.value.message
    assert "BENEFITPAY_WALLET_SECRET_KEY" in excinfo.value.message
    assert "MERCHANT_ID" not in excinfo.value.message


def test_credentials_from_environment(monkeypatch):
    monkeypatch.setenv("BENEFITPAY_WALLET_MERCHANT_ID", "3186")
    monkeypatch.setenv("BENEFITPAY_WALLET_APP_ID", "1988588907")
    monkeypatch.setenv("BENEFITPAY_WALLET_SECRET_KEY", SECRET)
    monkeypatch.delenv("BENEFITPAY_WALLET_CLIENT_ID", raising=False)
    creds = load_wallet_credentials()
    assert creds.merchant_id == "3186"
    assert creds.client_id is None
    assert creds.check_status_url.startswith("https://")


@pytest.mark.parametrize(
    "data, outcome",
    [
        ({"status": "success"}, PAID),
        ({"status": "failed"}, FAILED),
        ({"error_code": "E1"}, FAILED),
        ({"status": "not_found"}, PENDING),
    ],
)
def test_result_from_status(data, outcome):
    assert result_from_status(data).outcome == outcome


def test_check_status_sends_signed_request(monkeypatch):
    sent = []

    def fake_post(url, payload, headers=None, timeout=None, label="Gateway"):
        sent.append((url, payload, headers))
        return {"status": "success"}

    monkeypatch.setattr(benefitpay, "post_json", fake_post)
    creds = WalletCredentials("3186", "app", SECRET, "https://wallet.example/check", client_id="client-9")

    assert WalletClient(creds).check_status("R1") == {"status": "success"}

    url, payload, headers = sent[0]
    assert url == "https://wallet.example/check"
    assert payload == {"merchant_id": "3186", "reference_id": "R1"}
    assert headers["X-FOO-Signature"] == generate_signature(payload, SECRET)
    assert headers["X-FOO-Signature-Type"] == "KEYVAL"
    assert headers["X-CLIENT-ID"] == "client-9"


def test_reference_number_format():
    reference = new_reference_number("0f8fad5b-d9cb-469f-a165-70867728950e")
    prefix, session_part, millis = reference.split("_")
    assert prefix == "HB"
    assert session_part == "0f8fad5bd9cb469fa165"
    assert millis.isdigit()


def test_signed_sdk_params_are_strings_and_verifiable():
    creds = WalletCredentials(3186, 1988588907, SECRET, "https://wallet.example/check")

    params = signed_sdk_params(creds, "HB_abc_1", "12.5", hide_mobile_qr=True, qr_timeout=120)

    assert params["merchantId"] == "3186"
    assert params["transactionAmount"] == "12.500"
    assert params["transactionCurrency"] == "BHD"
    assert (params["showResult"], params["hideMobileQR"], params["qr_timeout"]) == ("1", "1", "120")
    unsigned = {k: v for k, v in params.items() if k != "secure_hash"}
    assert params["secure_hash"] == generate_signature(unsigned, SECRET)

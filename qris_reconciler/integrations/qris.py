"""
QRIS payload helpers.

Converts a merchant's static QRIS (EMV-QRCPS) string into a dynamic one bound
to a single amount. Gateways without native amount-tagged QR issuance
(QiosPay, OrderKuota) rely on this being bit-exact.
"""
from qris_reconciler.exceptions import InvalidPayload

STATIC_INITIATION = "010211"
DYNAMIC_INITIATION = "010212"
COUNTRY_CODE_TLV = "5802ID"
CRC_TAG = "6304"


def crc16_ccitt(data: str) -> str:
    """
    CRC16-CCITT (poly 0x1021, init 0xFFFF) as 4 uppercase hex digits.

    Args:
        data: Payload to checksum

    Returns:
        str: Zero-padded uppercase hex checksum
    """
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def verify_checksum(payload: str) -> bool:
    """Check that the trailing 4 hex digits match the CRC of everything before."""
    if len(payload) < 8 or payload[-8:-4] != CRC_TAG:
        return False
    return crc16_ccitt(payload[:-4]) == payload[-4:].upper()


def make_dynamic(static_payload: str, amount: int) -> str:
    """
    Build a dynamic QRIS string carrying a fixed amount.

    Args:
        static_payload: Static QRIS string ending in ``6304`` + CRC
        amount: Whole Rupiah amount, must be positive

    Returns:
        str: Dynamic QRIS string with a fresh checksum

    Raises:
        InvalidPayload: If the payload is not a QRIS string or amount <= 0
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidPayload(f"QRIS amount must be a positive integer, got {amount!r}")

    payload = (static_payload or "").strip()
    if len(payload) <= 8:
        raise InvalidPayload("QRIS payload is empty or truncated")

    body = payload[:-8].replace(STATIC_INITIATION, DYNAMIC_INITIATION)

    position = body.find(COUNTRY_CODE_TLV)
    if position == -1:
        raise InvalidPayload("QRIS payload has no 5802ID country code tag")

    value = str(amount)
    amount_tlv = f"54{len(value):02d}{value}"

    dynamic = body[:position] + amount_tlv + body[position:] + CRC_TAG
    return dynamic + crc16_ccitt(dynamic)

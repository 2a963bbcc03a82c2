"""
Phone number utilities.

WhatsApp identifies accounts by JID; the tenant row stores only the digits.
"""


def extract_phone_from_jid(jid: str) -> str:
    """
    Extract phone number from WhatsApp JID.

    Args:
        jid: WhatsApp JID (e.g., "5511999999999@s.whatsapp.net" or
            "5511999999999:12@s.whatsapp.net" for a linked device)

    Returns:
        Phone number string (digits only), or "" when there is none
    """
    if not jid:
        return ""

    # Remove @s.whatsapp.net or similar suffixes
    phone = str(jid).split("@")[0]

    # Drop the device suffix of multi-device JIDs
    phone = phone.split(":")[0]

    # Remove any non-digit characters
    phone = ''.join(ch for ch in phone if ch.isdigit())

    return phone

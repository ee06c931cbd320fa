from datetime import datetime
import secrets


def generate_booking_reference(now: datetime) -> str:
    """TB + two-digit year + two-digit month + random hex suffix."""
    return f"TB{now:%y%m}{secrets.token_hex(4).upper()}"


def generate_ticket_number(route_id: str, index: int) -> str:
    route_code = route_id.replace("-", "")[-6:].upper()
    return f"TKT{route_code}{index:02d}{secrets.token_hex(3).upper()}"

"""US state names and postal codes."""
from typing import Optional

STATE_CODES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}

VALID_CODES = frozenset(STATE_CODES.values())


def state_code(state: Optional[str]) -> Optional[str]:
    """
    Resolve a state name or postal code to its two-letter code.

    Args:
        state (str): "California", "california", "CA" or "ca".

    Returns:
        Optional[str]: "CA", or None when the value is not a US state.
    """
    if not state:
        return None
    cleaned = state.strip()
    if cleaned.upper() in VALID_CODES:
        return cleaned.upper()
    return STATE_CODES.get(cleaned.lower())

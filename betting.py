# betting.py
import math

# --------------------------------------------------------
# --------------------- Odds constants  ------------------
# --------------------------------------------------------

ODDS_FOR = 2.5
ODDS_AGAINST = 1.5

# Bet outcomes
WON = "won"
LOST = "lost"
OPEN = "open"


def calculate_odds(champion: dict, is_for: bool) -> float:
    """
    Fixed odds for a bet on a champion.

      - eliminated champion → 0 (no bet possible)
      - declared winner     → 1 for, 0 against
      - everyone else       → ODDS_FOR / ODDS_AGAINST
    """
    if champion.get("is_eliminated"):
        return 0
    if champion.get("is_winner"):
        return 1 if is_for else 0
    return ODDS_FOR if is_for else ODDS_AGAINST


def potential_payout(amount, odds) -> int:
    """Whole points returned to the bettor if the bet wins (stake included)."""
    if not amount or not odds:
        return 0
    return int(math.floor(amount * odds))


def bet_outcome(bet: dict, champion, winner_id=None) -> str:
    """
    Decide a champion bet.

    Once a winner is declared every bet is decided:
      - 'for' wins only if its champion is the winner
      - 'against' wins unless its champion is the winner

    Without a winner, bets on an eliminated champion are decided unless that
    champion still has a pending redemption chance.
    """
    is_for = bool(bet.get("is_for"))

    if winner_id is not None:
        backed_winner = str(bet.get("champion_id")) == str(winner_id)
        if is_for:
            return WON if backed_winner else LOST
        return LOST if backed_winner else WON

    if not champion:
        return OPEN

    if champion.get("is_eliminated") and not champion.get("has_redemption_chance"):
        return LOST if is_for else WON

    return OPEN


def wager_outcome(wager: dict, correct_option_id) -> str:
    if correct_option_id is None:
        return OPEN
    if str(wager.get("option_id")) == str(correct_option_id):
        return WON
    return LOST


def settlement_payout(row: dict, outcome: str) -> int:
    """Points credited when a bet/wager settles with the given outcome."""
    if outcome != WON:
        return 0
    return potential_payout(row.get("amount") or 0, row.get("odds") or 0)


def champion_status(champion: dict) -> str:
    if champion.get("is_winner"):
        return "winner"
    if champion.get("is_eliminated"):
        return "eliminated"
    return "active"


def champion_view(champion: dict) -> dict:
    """API shape for a champion row, including current odds."""
    return {
        "id": champion.get("id"),
        "name": champion.get("name"),
        "is_eliminated": bool(champion.get("is_eliminated")),
        "is_winner": bool(champion.get("is_winner")),
        "has_redemption_chance": bool(champion.get("has_redemption_chance")),
        "is_redeemed": bool(champion.get("is_redeemed")),
        "status": champion_status(champion),
        "odds_for": calculate_odds(champion, True),
        "odds_against": calculate_odds(champion, False),
        "created_at": champion.get("created_at"),
        "updated_at": champion.get("updated_at"),
    }


def bet_view(bet: dict, champions_by_id: dict = None) -> dict:
    champions_by_id = champions_by_id or {}
    champion = champions_by_id.get(bet.get("champion_id")) or {}
    amount = bet.get("amount") or 0
    odds = bet.get("odds") or 0
    return {
        "id": bet.get("id"),
        "user_id": bet.get("user_id"),
        "champion_id": bet.get("champion_id"),
        "champion_name": champion.get("name") or "Unknown",
        "amount": amount,
        "odds": odds,
        "is_for": bool(bet.get("is_for")),
        "type": "For" if bet.get("is_for") else "Against",
        "potential_payout": potential_payout(amount, odds),
        "is_resolved": bool(bet.get("is_resolved")),
        "payout": bet.get("payout"),
        "created_at": bet.get("created_at"),
        "resolved_at": bet.get("resolved_at"),
    }


def parse_points(value):
    """
    Strictly parse a positive whole number of points.
    Returns the int, or None when the value is missing, fractional, or <= 0.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        return None
    return value


def parse_signed_points(value):
    """Like parse_points but accepts negatives (admin adjustments); 0 is rejected."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        s = value.strip()
        negative = s.startswith("-")
        if negative:
            s = s[1:]
        parsed = parse_points(s)
        if parsed is None:
            return None
        return -parsed if negative else parsed
    if isinstance(value, (int, float)) and value < 0:
        parsed = parse_points(-value)
        return -parsed if parsed is not None else None
    return parse_points(value)


def parse_bool(value, default=None):
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    s = str(value).strip().lower()
    if s in ("true", "t", "1", "yes", "for"):
        return True
    if s in ("false", "f", "0", "no", "against"):
        return False
    return default

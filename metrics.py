from decimal import Decimal

HUNDRED = Decimal(100)


def side_percent(value: Decimal | int, total: Decimal | int) -> Decimal:
    """Share of ``total`` wagered on one side, in percent.

    The boundaries are special-cased before dividing so an empty round shows
    an exact 50/50 split and a one-sided round exactly 100/0.
    """
    value = Decimal(value)
    total = Decimal(total)
    if total == 0:
        return Decimal(50)
    if value == total:
        return HUNDRED
    if value == 0:
        return Decimal(0)
    return HUNDRED * value / total


def format_percent(value: Decimal | int, total: Decimal | int) -> str:
    # At most five characters, e.g. "33.33", "50", "100".
    return format(side_percent(value, total).normalize(), "f")[:5].rstrip(".")


def outcome_labels(red_total: Decimal, blue_total: Decimal, is_active: bool) -> tuple[str, str]:
    """Labels shown under red and blue: WINNING/LOSING/TIE while active, WINNER/LOSER/TIED after."""
    win, lose, tie = ("WINNING", "LOSING", "TIE") if is_active else ("WINNER", "LOSER", "TIED")
    if red_total > blue_total:
        return win, lose
    if red_total < blue_total:
        return lose, win
    return tie, tie

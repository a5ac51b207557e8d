# loyalty/luhn.py


def is_valid(number: str) -> bool:
    """Mod-10 check digit test, doubling every second digit from the right.

    Anything that is not a non-empty run of ASCII digits is invalid.
    """
    if not number or not (number.isascii() and number.isdigit()):
        return False

    total = 0
    for i, ch in enumerate(reversed(number)):
        digit = ord(ch) - ord("0")
        if i % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0

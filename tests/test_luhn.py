# tests/test_luhn.py
import random

import pytest

from loyalty.luhn import is_valid


def reference_checksum(s: str) -> bool:
    digits = [int(c) for c in s]
    odd = digits[-1::-2]
    even = digits[-2::-2]
    return (sum(odd) + sum(sum(divmod(2 * d, 10)) for d in even)) % 10 == 0


@pytest.mark.parametrize("number", ["79927398713", "2377225624", "12345678903", "4532015112830366", "0", "18", "91"])
def test_known_valid_numbers(number):
    assert is_valid(number)


@pytest.mark.parametrize("number", ["1234", "79927398710", "12345678901", "19"])
def test_known_invalid_numbers(number):
    assert not is_valid(number)


@pytest.mark.parametrize("number", ["", " ", "7992 7398713", "79927398713\n", "-18", "1.8", "abc", "١٨"])
def test_non_digit_input_is_invalid(number):
    assert not is_valid(number)


def test_matches_reference_on_random_digit_strings():
    rng = random.Random(20241019)
    for _ in range(2000):
        s = "".join(rng.choice("0123456789") for _ in range(rng.randint(1, 24)))
        assert is_valid(s) == reference_checksum(s), s

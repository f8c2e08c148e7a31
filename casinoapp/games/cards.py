"""Playing cards and blackjack hand scoring."""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from typing import Iterable, List, Sequence


class Suit(enum.Enum):
    SPADES = "♠"
    HEARTS = "♥"
    DIAMONDS = "♦"
    CLUBS = "♣"


RANKS = ("A", "2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K")


@dataclass(frozen=True)
class Card:
    rank: str
    suit: Suit

    @property
    def value(self) -> int:
        """Blackjack value with aces counted high."""

        if self.rank == "A":
            return 11
        if self.rank in ("J", "Q", "K"):
            return 10
        return int(self.rank)

    @property
    def is_ace(self) -> bool:
        return self.rank == "A"

    def __str__(self) -> str:
        return f"{self.rank}{self.suit.value}"


def new_deck(rng: random.Random) -> List[Card]:
    deck = [Card(rank, suit) for suit in Suit for rank in RANKS]
    rng.shuffle(deck)
    return deck


def hand_score(cards: Iterable[Card]) -> int:
    """Score a hand, downgrading aces from 11 to 1 while it would bust."""

    hand = list(cards)
    total = sum(card.value for card in hand)
    aces = sum(1 for card in hand if card.is_ace)
    while total > 21 and aces > 0:
        total -= 10
        aces -= 1
    return total


def is_blackjack(cards: Sequence[Card]) -> bool:
    return len(cards) == 2 and hand_score(cards) == 21


def format_hand(cards: Sequence[Card], *, hide_hole: bool = False) -> str:
    if hide_hole and len(cards) > 1:
        return f"{cards[0]} 🂠"
    return " ".join(str(card) for card in cards)


__all__ = ["Card", "RANKS", "Suit", "format_hand", "hand_score", "is_blackjack", "new_deck"]

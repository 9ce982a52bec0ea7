"""
Fixed rule constants for 7-ate-9.

This module is the single source of truth for the deck composition and the
numbers the rule engine works with. Unlike server settings (see config.py)
these are part of the game itself and are not configurable.

Deck (99 cards):
    - Numbers 1-9: 6 copies each (54 cards)
    - Wild cards: 45 cards, see WILD_CARD_COUNTS

Sequence:
    1 -> 2 -> 3 -> ... -> 9 -> 1
"""

# =============================================================================
# Sequence
# =============================================================================

MIN_NUMBER = 1
MAX_NUMBER = 9

# Requirement used when the first discard is a wild card
DEFAULT_REQUIRED_NUMBER = 1


# =============================================================================
# Deck Composition
# =============================================================================

NUMBER_COPIES = 6

# Keys match WildKind values in game.py (also used in card ids)
WILD_CARD_COUNTS: dict[str, int] = {
    "ate": 5,
    "addy": 5,
    "divide": 5,
    "british3": 4,
    "slicepi": 3,
    "nuuh": 5,
    "cannibal": 4,
    "negativity": 5,
    "tickles": 5,
}

NUMBER_CARD_TOTAL = NUMBER_COPIES * (MAX_NUMBER - MIN_NUMBER + 1)
WILD_CARD_TOTAL = sum(WILD_CARD_COUNTS.values())
DECK_SIZE = NUMBER_CARD_TOTAL + WILD_CARD_TOTAL  # 99


# =============================================================================
# Wild Card Effects
# =============================================================================

# Wilds that reset the requirement to a fixed value instead of advancing it
NOMINAL_VALUES: dict[str, int] = {
    "british3": 4,
    "slicepi": 3,
    "nuuh": 5,
    "cannibal": 4,
    "negativity": 5,
    "tickles": 5,
}

# Slice of Pi discards every number card at or below this value
SLICE_OF_PI_MAX = 4

# Cannibal: extra cards the mover eats from the end of their hand
CANNIBAL_DISCARDS = 2

# Tickles: how many following players are tickled, and how many cards each draws
TICKLES_TARGETS = 2
TICKLES_DRAWS = 2


# =============================================================================
# Match Setup
# =============================================================================

HAND_SIZE = 7
MIN_PLAYERS = 3
MAX_PLAYERS = 5

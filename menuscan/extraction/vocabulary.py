"""Controlled vocabularies for categories, sizes and modifier groups."""

from __future__ import annotations

from typing import Dict, List, Optional

CATEGORY_GROUPS: Dict[str, List[str]] = {
    "Food": [
        "Appetizers",
        "Soups",
        "Salads",
        "Sandwiches",
        "Burgers",
        "Pizza",
        "Pasta",
        "Entrees",
        "Desserts",
        "Sides",
        "Kids Menu",
    ],
    "Cocktails": ["Classic Cocktails", "Signature Cocktails", "Martinis", "Margaritas", "Mojitos", "Shots"],
    "Beer": ["Draft Beer", "Bottled Beer", "Canned Beer", "Cider", "RTDs (Ready-to-Drink)"],
    "Wine": ["Red Wine", "White Wine", "Rosé Wine", "Sparkling Wine"],
    "Liquor": ["Whiskey", "Vodka", "Gin", "Rum", "Tequila", "Liqueurs"],
    "N/A": ["Coffee", "Tea", "Juice", "Soda", "Mocktails"],
    "Merchandise": ["Apparel", "Glassware", "Other"],
}

ALLOWED_CATEGORIES: List[str] = [name for names in CATEGORY_GROUPS.values() for name in names]

ALLOWED_SIZES: List[str] = ["Regular", "Large", "Side", '12"', '16"', "Glass", "Bottle"]

DEFAULT_SIZE = "Regular"

COMMON_MODIFIER_GROUPS: List[str] = [
    "Toppings",
    "Sides",
    "Add Protein",
    "Crust Type",
    "Extra Toppings",
    "Sauces",
    "Syrups",
    "Milk Options",
]

_CATEGORY_LOOKUP = {name.casefold(): name for name in ALLOWED_CATEGORIES}
_SIZE_LOOKUP = {name.casefold(): name for name in ALLOWED_SIZES}
_SIZE_ALIASES = {
    "n/a": DEFAULT_SIZE,
    "default": DEFAULT_SIZE,
    "standard": DEFAULT_SIZE,
    "12 inch": '12"',
    '12in': '12"',
    "16 inch": '16"',
    '16in': '16"',
}


def match_category(value: Optional[str]) -> Optional[str]:
    """Return the canonical category for ``value`` or ``None`` when it is not in the vocabulary."""

    if not value:
        return None
    return _CATEGORY_LOOKUP.get(value.strip().casefold())


def match_size(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    key = value.strip().casefold()
    return _SIZE_LOOKUP.get(key) or _SIZE_ALIASES.get(key)

# -*- coding: utf-8 -*-
"""
Static quest map and per-team route generation.

The successor graph only biases the walk. Locations the walk never reaches
are inserted at random positions between the entry and the last element, so
every route still visits all six locations.
"""
import random
from typing import Dict, List, Optional, Any

ENTRY = "gates"
TERMINAL = "lair"

LOCATIONS: Dict[str, Dict[str, Any]] = {
    "gates": {"name": "Врата Кибердеревни", "emoji": "🚪", "order": 1},
    "dome": {"name": "Купол Защиты", "emoji": "🛡️", "order": 2},
    "mirror": {"name": "Зеркало Истины", "emoji": "🪞", "order": 3},
    "stone": {"name": "Камень Пророчеств", "emoji": "🔮", "order": 4},
    "hut": {"name": "Хижина Хранителя", "emoji": "🏠", "order": 5},
    "lair": {"name": "Логово Вируса", "emoji": "👾", "order": 6},
}

ALL_LOCATIONS: List[str] = sorted(LOCATIONS, key=lambda loc: LOCATIONS[loc]["order"])

NEXT_LOCATIONS: Dict[str, List[str]] = {
    "gates": ["dome", "mirror", "stone"],
    "dome": ["mirror", "stone", "hut"],
    "mirror": ["dome", "stone", "hut"],
    "stone": ["dome", "mirror", "hut"],
    "hut": ["lair"],
    "lair": [],
}


def is_location(location_id: Optional[str]) -> bool:
    return location_id in LOCATIONS


def location_name(location_id: str) -> str:
    return LOCATIONS[location_id]["name"]


def location_label(location_id: str) -> str:
    data = LOCATIONS[location_id]
    return f"{data['emoji']} {data['name']}"


def generate_route(rng: Optional[random.Random] = None) -> List[str]:
    rng = rng or random.Random()

    route = [ENTRY]
    used = {ENTRY}
    current = ENTRY
    while current != TERMINAL:
        options = [loc for loc in NEXT_LOCATIONS.get(current, []) if loc not in used]
        if not options:
            break
        current = rng.choice(options)
        route.append(current)
        used.add(current)

    if TERMINAL not in used:
        route.append(TERMINAL)
        used.add(TERMINAL)

    for loc in ALL_LOCATIONS:
        if loc in used:
            continue
        # between the entry and the last element
        pos = rng.randint(1, len(route) - 1)
        route.insert(pos, loc)
        used.add(loc)

    return route


def is_valid_route(route: List[str]) -> bool:
    return (
        len(route) == len(ALL_LOCATIONS)
        and set(route) == set(ALL_LOCATIONS)
        and route[0] == ENTRY
    )

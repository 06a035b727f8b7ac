"""
Placement calculation for finished matches.

Pure functions only; callers load and persist the data.
"""

from typing import Dict, List, Optional
from scorekeeper.database.models import WinCondition


def _side_key(player: Dict):
    # Team members compete as one side.
    team_id = player.get("team_id")
    return ("team", team_id) if team_id is not None else ("player", player["id"])


def calculate_placement(players: List[Dict], scoresheet: Dict) -> List[Dict]:
    """
    Derive placements and winners from final scores.

    Players on the same team share their team's total. Tied sides share a
    placement and the next placement skips accordingly (1, 1, 3).

    Args:
        players: Dicts with ``id``, ``score`` (None counts as 0) and optional ``team_id``
        scoresheet: Dict with ``win_condition``, optional ``target_score`` and ``is_coop``

    Returns:
        List of ``{"id", "placement", "score", "winner"}`` in input order.
        Placement is None when the win condition does not rank players.
    """
    win_condition = scoresheet.get("win_condition", WinCondition.HIGHEST_SCORE.value)

    sides: Dict[tuple, int] = {}
    for player in players:
        key = _side_key(player)
        sides[key] = sides.get(key, 0) + (player.get("score") or 0)

    placements: Dict[tuple, Optional[int]] = {key: None for key in sides}
    winners: Dict[tuple, bool] = {key: False for key in sides}

    if win_condition in (WinCondition.HIGHEST_SCORE.value, WinCondition.LOWEST_SCORE.value):
        descending = win_condition == WinCondition.HIGHEST_SCORE.value
        ordered = sorted(sides.items(), key=lambda item: item[1], reverse=descending)
        previous_score = None
        placement = 0
        for index, (key, score) in enumerate(ordered, start=1):
            if score != previous_score:
                placement = index
                previous_score = score
            placements[key] = placement
            winners[key] = placement == 1
    elif win_condition == WinCondition.TARGET_SCORE.value:
        target = scoresheet.get("target_score")
        for key, score in sides.items():
            reached = target is not None and score == target
            placements[key] = 1 if reached else 2
            winners[key] = reached

    if scoresheet.get("is_coop") and win_condition != WinCondition.TARGET_SCORE.value:
        # Cooperative games are won or lost together.
        for key in sides:
            placements[key] = None
            winners[key] = False

    return [
        {
            "id": player["id"],
            "placement": placements[_side_key(player)],
            "score": sides[_side_key(player)],
            "winner": winners[_side_key(player)],
        }
        for player in players
    ]

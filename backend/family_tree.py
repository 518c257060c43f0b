"""Couple-aware family tree construction and tree integrity checks."""

import logging
from typing import Any

logger = logging.getLogger("silsilah.tree")


class TreeIntegrityError(Exception):
    """The parent links do not form a tree (e.g. a cycle was walked into)."""


def sort_members(members: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Natural listing order: generation ascending, then name."""
    return sorted(members, key=lambda m: (m.get("generation") or 1, m.get("name") or "", str(m["id"])))


def collect_spouse_ids(members: list[dict[str, Any]]) -> set:
    """
    Ids shown only inside their partner's couple node.

    Every id referenced as someone else's spouseId is hidden. When both halves
    of a couple reference each other, one of them must stay visible: the one
    with a lineage parent, else the one with children, else the first in
    listing order.
    """
    by_id = {m["id"]: m for m in members}
    has_children = {m.get("parentId") for m in members if m.get("parentId") is not None}
    order = {m["id"]: i for i, m in enumerate(sort_members(members))}

    def anchor_rank(member: dict[str, Any]) -> tuple:
        return (
            member.get("parentId") is None,
            member["id"] not in has_children,
            order[member["id"]],
        )

    hidden = set()
    for member in members:
        spouse_id = member.get("spouseId")
        if spouse_id is None or spouse_id == member["id"]:
            continue
        spouse = by_id.get(spouse_id)
        if spouse is not None and spouse.get("spouseId") == member["id"]:
            # Mutual link: hide whichever half ranks lower as the anchor
            if anchor_rank(member) < anchor_rank(spouse):
                hidden.add(spouse_id)
        else:
            hidden.add(spouse_id)
    return hidden


def build_forest(members: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Build the family tree as a list of root couple nodes.

    Each node is the member's fields plus "spouse" (the partner's fields or
    None) and "children" (child nodes). Members shown as a spouse never appear
    as roots or as separate children. Members whose parentId points nowhere are
    left out.

    Raises TreeIntegrityError if descent goes deeper than the generation count
    allows, which only happens when parent links loop.
    """
    if not members:
        return []

    ordered = sort_members(members)
    by_id = {m["id"]: m for m in ordered}
    spouse_ids = collect_spouse_ids(ordered)

    # parentId -> visible children, in listing order
    children_of: dict[Any, list[dict[str, Any]]] = {}
    for member in ordered:
        if member["id"] in spouse_ids:
            continue
        children_of.setdefault(member.get("parentId"), []).append(member)

    max_depth = max(m.get("generation") or 1 for m in ordered) + 2

    def build_node(member: dict[str, Any], depth: int) -> dict[str, Any]:
        if depth > max_depth:
            raise TreeIntegrityError(
                f"Tree deeper than {max_depth} levels at {member['name']!r} ({member['id']}); "
                f"parent links probably form a cycle"
            )
        spouse_id = member.get("spouseId")
        node = dict(member)
        node["spouse"] = dict(by_id[spouse_id]) if spouse_id in by_id and spouse_id != member["id"] else None
        node["children"] = [build_node(child, depth + 1) for child in children_of.get(member["id"], [])]
        return node

    forest = [build_node(root, 1) for root in children_of.get(None, [])]
    logger.debug(f"Built forest with {len(forest)} root(s) from {len(members)} members")
    return forest


def iter_tree(nodes: list[dict[str, Any]]):
    """Yield every node of a forest, depth first."""
    for node in nodes:
        yield node
        yield from iter_tree(node.get("children", []))


def detect_circular_ancestry(members_by_id: dict[str, Any], member_id: str, potential_parent_id: str) -> bool:
    """
    Check if making potential_parent the parent of member would create circular ancestry.
    Returns True if circular relationship detected.

    members_by_id maps ids to objects or dicts exposing a parent id
    (parent_id attribute or "parentId" key).
    """
    def parent_of(pid):
        member = members_by_id.get(pid)
        if member is None:
            return None
        if isinstance(member, dict):
            return member.get("parentId")
        return getattr(member, "parent_id", None)

    visited = set()
    current = potential_parent_id
    while current is not None and current not in visited:
        if current == member_id:
            return True
        visited.add(current)
        current = parent_of(current)
    return False


def validate_tree(members: list[dict[str, Any]]) -> list[str]:
    """
    Check the member links for:
    - Self references and dangling parent/spouse ids
    - One-sided spouse links
    - Parents that are not from an older generation
    - Cycles in parent links
    - Members hidden as a spouse whose own children therefore do not show

    Returns a list of warning messages.
    """
    warnings: list[str] = []
    by_id = {m["id"]: m for m in members}

    for member in sort_members(members):
        name = member["name"]
        parent_id = member.get("parentId")
        spouse_id = member.get("spouseId")

        if parent_id == member["id"]:
            warnings.append(f"{name} is their own parent")
        elif parent_id is not None and parent_id not in by_id:
            warnings.append(f"{name} has a parent that no longer exists and is not shown in the tree")
        elif parent_id is not None:
            parent = by_id[parent_id]
            if (parent.get("generation") or 1) >= (member.get("generation") or 1):
                warnings.append(
                    f"{name} (generation {member.get('generation')}) has parent {parent['name']} "
                    f"from generation {parent.get('generation')}"
                )

        if spouse_id == member["id"]:
            warnings.append(f"{name} is their own spouse")
        elif spouse_id is not None and spouse_id not in by_id:
            warnings.append(f"{name} has a spouse that no longer exists")
        elif spouse_id is not None and by_id[spouse_id].get("spouseId") != member["id"]:
            warnings.append(f"Spouse link between {name} and {by_id[spouse_id]['name']} is one-sided")

    # Cycle check: walk each member's ancestry
    reported = set()
    for member in members:
        seen = []
        current = member
        while current is not None and current["id"] not in seen:
            seen.append(current["id"])
            current = by_id.get(current.get("parentId"))
        if current is not None:
            cycle = seen[seen.index(current["id"]):]
            key = frozenset(cycle)
            if key not in reported:
                reported.add(key)
                names = [by_id[i]["name"] for i in cycle]
                warnings.append(f"Cycle detected in parent links: {' -> '.join(names)}")

    spouse_ids = collect_spouse_ids(members)
    has_children = {}
    for member in members:
        has_children.setdefault(member.get("parentId"), []).append(member)
    for hidden_id in sorted(spouse_ids, key=str):
        if hidden_id in by_id and has_children.get(hidden_id):
            warnings.append(
                f"Children of {by_id[hidden_id]['name']} are not shown because "
                f"{by_id[hidden_id]['name']} is displayed as a spouse"
            )

    return warnings


def calculate_family_stats(members: list[dict[str, Any]]) -> dict[str, int]:
    """Headline counts for the family overview."""
    return {
        "totalMembers": len(members),
        "generations": len({m.get("generation") for m in members}),
        "maleCount": sum(1 for m in members if m.get("gender") == "L"),
        "femaleCount": sum(1 for m in members if m.get("gender") == "P"),
    }

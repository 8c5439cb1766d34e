"""
services/item_service.py — Item algebra and per-participant cost allocation.

Every public function that takes a document returns a NEW document; the
input is never mutated, so these functions can be handed straight to
SyncEngine.apply_local_mutation().

Split groups:
  Splitting a multi-quantity line peels off one unit-quantity sibling and
  stamps both with a shared split_group_id (the original item's id on the
  first split). For every group, sum(quantity) and sum(price) equal the
  pre-split line. Merging folds the group back into its first member.

Money:
  Prices are Decimal. A unit price is rounded DOWN to cents and the source
  line keeps whatever is left, so a group always sums to the original price
  exactly. Allocation uses the same ROUND_DOWN + remainder rule per item.
"""

from __future__ import annotations

import random
import uuid
from decimal import ROUND_DOWN, Decimal

from splitroom.app.errors import AppError, ErrorCode
from splitroom.app.services.document import copy_document

CENT = Decimal("0.01")


# ── Private helpers ────────────────────────────────────────────────────────

def _new_id() -> str:
    return str(uuid.uuid4())


def _index_of_item(document: dict, item_id: str) -> int:
    """Returns the position of item_id or raises ITEM_NOT_FOUND (404)."""
    for index, item in enumerate(document["items"]):
        if item["id"] == item_id:
            return index
    raise AppError(
        ErrorCode.ITEM_NOT_FOUND,
        f"Item {item_id} does not exist.",
        404,
    )


def _require_participant(document: dict, participant_id: str) -> None:
    if not any(u["id"] == participant_id for u in document["users"]):
        raise AppError(
            ErrorCode.UNKNOWN_ASSIGNEE,
            f"Participant {participant_id} is not part of this split.",
            422,
            field="assigned_to",
        )


def _even_shares(amount: Decimal, participant_ids: list[str]) -> dict[str, Decimal]:
    """
    Divides amount evenly using ROUND_DOWN to cents.
    The remainder is added to the first participant's share.
    Guarantees: sum(result.values()) == amount.
    """
    n = len(participant_ids)
    base = (amount / Decimal(n)).quantize(CENT, rounding=ROUND_DOWN)
    remainder = amount - (base * n)

    shares = {pid: base for pid in participant_ids}
    if remainder:
        shares[participant_ids[0]] += remainder
    return shares


# ── Items ──────────────────────────────────────────────────────────────────

def new_item(
        name: str,
        price,
        quantity: int = 1,
        assigned_to: list[str] | None = None,
        bill_name: str | None = None,
) -> dict:
    """
    Builds an item with a fresh id.

    Raises INVALID_ITEM (400) for a negative price, a quantity below 1 or
    a blank name.
    """
    price = Decimal(str(price))
    if not name or not name.strip():
        raise AppError(ErrorCode.INVALID_ITEM, "Item name must not be blank.", 400, field="name")
    if price < 0:
        raise AppError(ErrorCode.INVALID_ITEM, "Price must not be negative.", 400, field="price")
    if int(quantity) < 1:
        raise AppError(ErrorCode.INVALID_ITEM, "Quantity must be at least 1.", 400, field="quantity")

    return {
        "id": _new_id(),
        "name": name.strip(),
        "price": price,
        "quantity": int(quantity),
        "assigned_to": list(dict.fromkeys(assigned_to or [])),
        "split_group_id": None,
        "bill_name": bill_name,
    }


def find_item(document: dict, item_id: str) -> dict:
    return document["items"][_index_of_item(document, item_id)]


def add_item(document: dict, item: dict) -> dict:
    for participant_id in item.get("assigned_to", []):
        _require_participant(document, participant_id)
    result = copy_document(document)
    result["items"].append(dict(item))
    return result


def add_items(document: dict, items: list[dict]) -> dict:
    result = document
    for item in items:
        result = add_item(result, item)
    return result


def remove_item(document: dict, item_id: str) -> dict:
    index = _index_of_item(document, item_id)
    result = copy_document(document)
    del result["items"][index]
    return result


def split_item(document: dict, item_id: str) -> dict:
    """
    Peels one unit off a multi-quantity line.

    The new unit item is inserted right after its source, copies the source's
    assignment, and shares its split_group_id.

    Raises:
      AppError(ITEM_NOT_FOUND, 404)
      AppError(ITEM_NOT_SPLITTABLE, 422) — quantity is already 1
    """
    index = _index_of_item(document, item_id)
    source = document["items"][index]
    if source["quantity"] <= 1:
        raise AppError(
            ErrorCode.ITEM_NOT_SPLITTABLE,
            f"Item {item_id} has a quantity of 1 and cannot be split further.",
            422,
        )

    result = copy_document(document)
    source = result["items"][index]

    unit_price = (source["price"] / Decimal(source["quantity"])).quantize(
        CENT, rounding=ROUND_DOWN
    )
    group_id = source.get("split_group_id") or source["id"]

    sibling = {
        "id": _new_id(),
        "name": source["name"],
        "price": unit_price,
        "quantity": 1,
        "assigned_to": list(source["assigned_to"]),
        "split_group_id": group_id,
        "bill_name": source.get("bill_name"),
    }

    source["quantity"] -= 1
    source["price"] -= unit_price
    source["split_group_id"] = group_id

    result["items"].insert(index + 1, sibling)
    return result


def split_item_fully(document: dict, item_id: str) -> dict:
    """Splits a line repeatedly until every member of its group has quantity 1."""
    result = document
    while find_item(result, item_id)["quantity"] > 1:
        result = split_item(result, item_id)
    return result


def merge_split_group(document: dict, split_group_id: str) -> dict:
    """
    Folds every item of a split group back into its first member.

    Quantity and price are summed, assignments are unioned (first-seen
    order, no duplicates) and split_group_id is cleared. Fewer than two
    members is a no-op and returns the document unchanged.
    """
    members = [
        index for index, item in enumerate(document["items"])
        if split_group_id and item.get("split_group_id") == split_group_id
    ]
    if len(members) < 2:
        return document

    result = copy_document(document)
    first = result["items"][members[0]]
    for index in members[1:]:
        other = result["items"][index]
        first["quantity"] += other["quantity"]
        first["price"] += other["price"]
        for participant_id in other["assigned_to"]:
            if participant_id not in first["assigned_to"]:
                first["assigned_to"].append(participant_id)
    first["split_group_id"] = None

    dropped = set(members[1:])
    result["items"] = [
        item for index, item in enumerate(result["items"]) if index not in dropped
    ]
    return result


def set_assignment(document: dict, item_id: str, participant_id: str, assigned: bool) -> dict:
    """
    Adds or removes one participant from an item's assignment.
    Adding someone who is already assigned (or removing someone who is not)
    leaves the item as it was.
    """
    index = _index_of_item(document, item_id)
    if assigned:
        _require_participant(document, participant_id)

    result = copy_document(document)
    item = result["items"][index]
    if assigned and participant_id not in item["assigned_to"]:
        item["assigned_to"].append(participant_id)
    elif not assigned:
        item["assigned_to"] = [pid for pid in item["assigned_to"] if pid != participant_id]
    return result


def assign_everyone(document: dict) -> dict:
    """Assigns every participant to every item (the even-split starting point)."""
    result = copy_document(document)
    everyone = [u["id"] for u in result["users"]]
    for item in result["items"]:
        item["assigned_to"] = list(everyone)
    return result


# ── Participants ───────────────────────────────────────────────────────────

def random_color(rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    return f"#{rng.randrange(0x1000000):06X}"


def new_participant(name: str, color: str | None = None, rng: random.Random | None = None) -> dict:
    if not name or not name.strip():
        raise AppError(
            ErrorCode.INVALID_FIELD,
            "Display name must not be blank.",
            400,
            field="name",
        )
    return {
        "id": _new_id(),
        "name": name.strip(),
        "color": color or random_color(rng),
    }


def find_participant_by_name(document: dict, name: str) -> dict | None:
    """Case-insensitive, whitespace-trimmed match on display name."""
    wanted = name.strip().casefold()
    for participant in document["users"]:
        if participant["name"].strip().casefold() == wanted:
            return participant
    return None


def add_participant(document: dict, participant: dict, assign_to_all: bool = True) -> dict:
    """
    Appends a participant. With assign_to_all, the newcomer is also added
    to every existing item so they start "in" on everything already listed.
    A participant whose id is already present is not added twice.
    """
    result = copy_document(document)
    if not any(u["id"] == participant["id"] for u in result["users"]):
        result["users"].append(dict(participant))
    if assign_to_all:
        for item in result["items"]:
            if participant["id"] not in item["assigned_to"]:
                item["assigned_to"].append(participant["id"])
    return result


def remove_participant(document: dict, participant_id: str) -> dict:
    """
    Removes a participant and strips their id from every item's assignment.

    Raises:
      AppError(PARTICIPANT_NOT_FOUND, 404)
    """
    if not any(u["id"] == participant_id for u in document["users"]):
        raise AppError(
            ErrorCode.PARTICIPANT_NOT_FOUND,
            f"Participant {participant_id} is not part of this split.",
            404,
        )
    result = copy_document(document)
    result["users"] = [u for u in result["users"] if u["id"] != participant_id]
    for item in result["items"]:
        item["assigned_to"] = [pid for pid in item["assigned_to"] if pid != participant_id]
    return result


# ── Allocation ─────────────────────────────────────────────────────────────

def compute_user_totals(document: dict) -> dict:
    """
    Returns what each participant owes.

    Each item's price is shared evenly across its assignees; items nobody is
    assigned to are reported under unassigned_total. Assignees that are no
    longer in `users` are ignored.

    Returns:
        {"grand_total": Decimal, "unassigned_total": Decimal,
         "user_totals": {participant_id: Decimal}}
    """
    user_totals = {u["id"]: Decimal("0") for u in document["users"]}
    grand_total = Decimal("0")
    unassigned_total = Decimal("0")

    for item in document["items"]:
        grand_total += item["price"]
        assignees = [pid for pid in item["assigned_to"] if pid in user_totals]
        if not assignees:
            unassigned_total += item["price"]
            continue
        for pid, share in _even_shares(item["price"], assignees).items():
            user_totals[pid] += share

    return {
        "grand_total": grand_total,
        "unassigned_total": unassigned_total,
        "user_totals": user_totals,
    }


def build_user_breakdown(document: dict) -> list[dict]:
    """Per-participant list of items with each item's share and the participant's total."""
    known = {u["id"] for u in document["users"]}
    breakdown = []
    for participant in document["users"]:
        lines = []
        for item in document["items"]:
            assignees = [pid for pid in item["assigned_to"] if pid in known]
            if participant["id"] not in assignees:
                continue
            share = _even_shares(item["price"], assignees)[participant["id"]]
            lines.append({
                "item_id": item["id"],
                "name": item["name"],
                "quantity": item["quantity"],
                "price": item["price"],
                "split_price": share,
                "shared_with": len(assignees),
            })
        breakdown.append({
            "participant": dict(participant),
            "items": lines,
            "total": sum((line["split_price"] for line in lines), Decimal("0")),
        })
    return breakdown

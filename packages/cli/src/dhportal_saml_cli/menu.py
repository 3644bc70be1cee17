"""Account menu retrieval and structure validation.

The portal exposes its menu through the JSON:API ``menu_items`` resource. The
account menu is expected to hold a "My Profile" parent whose children offer
both login routes, the profile page and logout.
"""

from __future__ import annotations
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal
from dhportal_saml_cli.api import APIClient, ApiRequestError


MENU_ENDPOINT = "/jsonapi/menu_items/{menu}"
DEFAULT_MENU = "account"


@dataclass(frozen=True, slots=True)
class ExpectedItem:
    """A menu entry the account menu must contain."""

    title: str
    kind: Literal["parent", "child"]
    required: bool = True


EXPECTED_ACCOUNT_MENU: tuple[ExpectedItem, ...] = (
    ExpectedItem("My Profile", "parent"),
    ExpectedItem("Netbadge Login", "child"),
    ExpectedItem("Partner Login", "child"),
    ExpectedItem("View Profile", "child"),
    ExpectedItem("Logout", "child"),
)


@dataclass(slots=True)
class MenuItem:
    """One enabled link of a menu."""

    id: str
    title: str
    url: str | None = None
    parent: str | None = None
    weight: int = 0
    children: list[MenuItem] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ItemCheck:
    """Validation outcome for one expected item."""

    expected: ExpectedItem
    outcome: Literal["ok", "missing", "misplaced", "optional"]


@dataclass(slots=True)
class MenuValidation:
    """Result of comparing a menu with the expected structure."""

    checks: list[ItemCheck]
    unexpected: list[str]
    total_items: int

    @property
    def is_valid(self) -> bool:
        """Return True when every required item is present and placed."""
        return all(
            check.outcome == "ok" or not check.expected.required
            for check in self.checks
        )


def parse_menu_items(payload: Mapping[str, Any]) -> list[MenuItem]:
    """Build the menu tree from a JSON:API ``menu_items`` document."""
    data = payload.get("data")
    if not isinstance(data, list):
        raise ApiRequestError("Menu response has no data list")
    items: dict[str, MenuItem] = {}
    for entry in data:
        if not isinstance(entry, Mapping):
            continue
        attributes = entry.get("attributes") or {}
        if attributes.get("enabled") is False:
            continue
        item_id = str(entry.get("id") or attributes.get("id") or "")
        title = str(attributes.get("title") or "").strip()
        if not item_id or not title:
            continue
        items[item_id] = MenuItem(
            id=item_id,
            title=title,
            url=attributes.get("url"),
            parent=attributes.get("parent") or None,
            weight=int(attributes.get("weight") or 0),
        )
    roots: list[MenuItem] = []
    for item in items.values():
        parent = items.get(item.parent) if item.parent else None
        if parent is None:
            roots.append(item)
        else:
            parent.children.append(item)
    for item in items.values():
        item.children.sort(key=lambda child: (child.weight, child.title))
    roots.sort(key=lambda item: (item.weight, item.title))
    return roots


def fetch_menu(client: APIClient, menu: str = DEFAULT_MENU) -> list[MenuItem]:
    """Fetch and parse ``menu`` from the deployment."""
    payload = client.get_json(
        MENU_ENDPOINT.format(menu=menu), description=f"{menu} menu"
    )
    if not isinstance(payload, Mapping):
        raise ApiRequestError("Menu response is not a JSON object")
    return parse_menu_items(payload)


def flatten(items: Iterable[MenuItem], depth: int = 0) -> list[tuple[int, MenuItem]]:
    """Return ``(depth, item)`` pairs in display order."""
    rows: list[tuple[int, MenuItem]] = []
    for item in items:
        rows.append((depth, item))
        rows.extend(flatten(item.children, depth + 1))
    return rows


def validate_menu(
    roots: list[MenuItem],
    expected: Iterable[ExpectedItem] = EXPECTED_ACCOUNT_MENU,
) -> MenuValidation:
    """Compare the first two levels of the menu with ``expected``.

    Titles match on containment, so "Logout (NetBadge)" satisfies "Logout".
    Children must sit under the expected parent.
    """
    expected = tuple(expected)
    parents = [item for item in expected if item.kind == "parent"]
    visible = [
        (depth, item) for depth, item in flatten(roots) if depth <= 1
    ]
    parent_item = None
    for candidate in parents:
        parent_item = next(
            (item for depth, item in visible if depth == 0 and candidate.title in item.title),
            None,
        )
        if parent_item is not None:
            break
    checks: list[ItemCheck] = []
    for item in expected:
        matches = [entry for depth, entry in visible if item.title in entry.title]
        if not matches:
            outcome = "missing" if item.required else "optional"
        elif item.kind == "parent":
            outcome = "ok" if parent_item is not None else "misplaced"
        elif parent_item is not None and any(
            entry in parent_item.children for entry in matches
        ):
            outcome = "ok"
        else:
            outcome = "misplaced"
        checks.append(ItemCheck(expected=item, outcome=outcome))
    unexpected = [
        entry.title
        for _, entry in visible
        if not any(item.title in entry.title for item in expected)
    ]
    return MenuValidation(checks=checks, unexpected=unexpected, total_items=len(visible))


__all__ = [
    "DEFAULT_MENU",
    "EXPECTED_ACCOUNT_MENU",
    "ExpectedItem",
    "ItemCheck",
    "MENU_ENDPOINT",
    "MenuItem",
    "MenuValidation",
    "fetch_menu",
    "flatten",
    "parse_menu_items",
    "validate_menu",
]

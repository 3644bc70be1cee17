"""Tests for account menu parsing, validation and the ``menu`` commands."""

from __future__ import annotations
from typing import Any
import pytest
import respx
from typer.testing import CliRunner
from dhportal_saml_cli.api import ApiRequestError
from dhportal_saml_cli.main import app
from dhportal_saml_cli.menu import flatten, parse_menu_items, validate_menu


MENU_URL = "http://portal.test/jsonapi/menu_items/account"


def _item(item_id: str, title: str, **attributes: Any) -> dict[str, Any]:
    return {
        "type": "menu_link_content--menu_link_content",
        "id": item_id,
        "attributes": {"title": title, **attributes},
    }


def _account_menu(*extra: dict[str, Any]) -> dict[str, Any]:
    return {
        "data": [
            _item("profile", "My Profile", weight=0),
            _item("netbadge", "Netbadge Login", parent="profile", weight=1),
            _item("partner", "Partner Login", parent="profile", weight=2),
            _item("view", "View Profile", parent="profile", weight=3),
            _item("logout", "Logout", parent="profile", weight=4, url="/saml/logout"),
            _item("hidden", "Old Login", enabled=False),
            *extra,
        ]
    }


def test_parse_menu_builds_ordered_tree() -> None:
    roots = parse_menu_items(
        {
            "data": [
                _item("b", "Second", weight=5),
                _item("a", "First", weight=-1),
                _item("c", "Child", parent="a"),
                _item("d", "Orphan", parent="missing"),
                _item("e", "Disabled", enabled=False),
                _item("f", ""),
            ]
        }
    )

    assert [item.title for item in roots] == ["First", "Orphan", "Second"]
    assert [(depth, item.title) for depth, item in flatten(roots)] == [
        (0, "First"),
        (1, "Child"),
        (0, "Orphan"),
        (0, "Second"),
    ]


def test_parse_menu_requires_data_list() -> None:
    with pytest.raises(ApiRequestError, match="no data list"):
        parse_menu_items({"errors": []})


def test_validate_accepts_expected_structure() -> None:
    result = validate_menu(parse_menu_items(_account_menu()))

    assert result.is_valid
    assert [check.outcome for check in result.checks] == ["ok"] * 5
    assert result.unexpected == []
    assert result.total_items == 5


def test_validate_flags_missing_and_misplaced_items() -> None:
    payload = _account_menu()
    payload["data"] = [
        entry for entry in payload["data"] if entry["id"] not in {"partner", "logout"}
    ]
    payload["data"].append(_item("root-logout", "Logout (NetBadge)", weight=9))
    payload["data"].append(_item("help", "Help", weight=10))

    result = validate_menu(parse_menu_items(payload))

    outcomes = {check.expected.title: check.outcome for check in result.checks}
    assert outcomes == {
        "My Profile": "ok",
        "Netbadge Login": "ok",
        "Partner Login": "missing",
        "View Profile": "ok",
        "Logout": "misplaced",
    }
    assert result.unexpected == ["Help"]
    assert not result.is_valid


def test_menu_show_prints_tree(runner: CliRunner, env: dict[str, str | None]) -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(MENU_URL).respond(200, json=_account_menu())
        result = runner.invoke(app, ["menu", "show"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "My Profile" in result.stdout
    assert "Netbadge Login" in result.stdout
    assert "/saml/logout" in result.stdout
    assert "Old Login" not in result.stdout


def test_menu_validate_passes(runner: CliRunner, env: dict[str, str | None]) -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(MENU_URL).respond(200, json=_account_menu())
        result = runner.invoke(app, ["menu", "validate"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "5/5 expected items in place, 5 items inspected." in result.stdout


def test_menu_validate_reports_problems(
    runner: CliRunner, env: dict[str, str | None]
) -> None:
    payload = _account_menu(_item("help", "Help", weight=10))
    payload["data"] = [entry for entry in payload["data"] if entry["id"] != "view"]
    with respx.mock(assert_all_called=True) as router:
        router.get(MENU_URL).respond(200, json=payload)
        result = runner.invoke(app, ["menu", "validate"], env=env)

    assert result.exit_code == 1
    assert "FAIL" in result.stdout
    assert "unexpected item 'Help'" in result.stdout
    assert "4/5 expected items in place" in result.stdout


def test_menu_reads_other_menus(runner: CliRunner, env: dict[str, str | None]) -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get("http://portal.test/jsonapi/menu_items/main").respond(
            200, json={"data": [_item("home", "Home")]}
        )
        result = runner.invoke(app, ["menu", "show", "--menu", "main"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Menu main" in result.stdout
    assert "Home" in result.stdout


def test_menu_reports_api_errors(runner: CliRunner, env: dict[str, str | None]) -> None:
    with respx.mock(assert_all_called=True) as router:
        router.get(MENU_URL).respond(404, json={"errors": []})
        result = runner.invoke(app, ["menu", "validate"], env=env)

    assert result.exit_code == 1
    assert "Request failed with status 404 while fetching account menu" in result.stdout

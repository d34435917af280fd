import pytest
from types import SimpleNamespace

from app.core.exceptions import ValidationError
from app.features.permissions.resolver import build_permission_key, merge_permission_layers, parse_permission_key


def perm(module: str, action: str) -> SimpleNamespace:
    return SimpleNamespace(id=f"{module}-{action}", module=module, action=action, description=None)


BOOKINGS_READ = perm("bookings", "read")
REPORTS_EXPORT = perm("reports", "export")
HOTELS_CREATE = perm("hotels", "create")


class TestMergePermissionLayers:
    """Group grants first, user overrides unconditionally on top"""

    def test_user_deny_overrides_group_allow(self):
        effective = merge_permission_layers([(BOOKINGS_READ, True)], [(BOOKINGS_READ, False)])

        entry = effective[("bookings", "read")]
        assert entry.is_allowed is False
        assert entry.source == "user"

    def test_user_allow_overrides_group_deny(self):
        effective = merge_permission_layers([(BOOKINGS_READ, False)], [(BOOKINGS_READ, True)])

        assert effective[("bookings", "read")].is_allowed is True

    def test_user_grant_for_key_group_never_mentions(self):
        effective = merge_permission_layers([(BOOKINGS_READ, True)], [(REPORTS_EXPORT, True)])

        assert effective[("reports", "export")].is_allowed is True
        assert effective[("reports", "export")].source == "user"
        assert effective[("bookings", "read")].source == "group"

    def test_group_only(self):
        effective = merge_permission_layers([(BOOKINGS_READ, True), (HOTELS_CREATE, False)], [])

        assert {k: e.is_allowed for k, e in effective.items()} == {
            ("bookings", "read"): True,
            ("hotels", "create"): False,
        }
        assert all(e.source == "group" for e in effective.values())

    def test_empty_layers(self):
        assert merge_permission_layers([], []) == {}

    @pytest.mark.parametrize("group_value", [True, False, None])
    @pytest.mark.parametrize("user_value", [True, False])
    def test_override_always_decides(self, group_value, user_value):
        group = [] if group_value is None else [(BOOKINGS_READ, group_value)]
        effective = merge_permission_layers(group, [(BOOKINGS_READ, user_value)])

        assert effective[("bookings", "read")].is_allowed is user_value


class TestPermissionKeys:
    def test_build(self):
        assert build_permission_key("bookings", "read") == "bookings:read"

    def test_parse(self):
        assert parse_permission_key("Hotels:create") == ("Hotels", "create")

    @pytest.mark.parametrize("key", ["bookings", "bookings:", ":read", "1bookings:read", "bookings:re-ad", ""])
    def test_parse_rejects_malformed(self, key):
        with pytest.raises(ValidationError):
            parse_permission_key(key)

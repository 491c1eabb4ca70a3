"""
Grant resolution: explicit levels, ancestry walk and the no-fallthrough rule.
"""

from integram_compat import basetypes
from integram_compat.permissions.grants import READ, WRITE, GrantMap, GrantResolver
from integram_compat.tests.fixtures import TEST_DB, ROLE_ID, seed_grant


class TestCheck:

    def test_found_key_does_not_fall_through_to_root(self, store):
        resolver = GrantResolver(store, TEST_DB)
        grants = GrantMap(levels={5: READ, 1: WRITE})

        assert resolver.check(grants, 5, 0, WRITE, "bob") is False
        assert resolver.check(grants, 5, 0, READ, "bob") is True

    def test_no_grants_and_no_ancestry_denies(self, store):
        resolver = GrantResolver(store, TEST_DB)
        assert resolver.check(GrantMap(), 999, 0, WRITE, "bob") is False

    def test_admin_always_passes(self, store):
        resolver = GrantResolver(store, TEST_DB)
        assert resolver.check(GrantMap(), 999, 0, WRITE, "Admin") is True

    def test_type_grant_in_root(self, store):
        resolver = GrantResolver(store, TEST_DB)
        grants = GrantMap(levels={basetypes.USER: WRITE})
        assert resolver.check(grants, 1, basetypes.USER, WRITE, "bob") is True

    def test_object_inherits_from_its_type(self, store):
        type_id = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
        obj_id = store.insert(TEST_DB, 1, 1, type_id, "Acme")
        resolver = GrantResolver(store, TEST_DB)

        assert resolver.check(GrantMap(levels={type_id: WRITE}), obj_id, 0, WRITE, "bob") is True
        assert resolver.check(GrantMap(levels={type_id: READ}), obj_id, 0, WRITE, "bob") is False

    def test_attribute_inherits_from_parent_object(self, store):
        type_id = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
        req_id = store.insert(TEST_DB, type_id, 1, basetypes.CHARS, "City")
        obj_id = store.insert(TEST_DB, 1, 1, type_id, "Acme")
        value_id = store.insert(TEST_DB, obj_id, 1, req_id, "NYC")
        resolver = GrantResolver(store, TEST_DB)

        assert resolver.check(GrantMap(levels={obj_id: WRITE}), value_id, 0, WRITE, "bob") is True


class TestLoad:

    def test_levels_and_export_flags(self, store):
        seed_grant(store, TEST_DB, ROLE_ID, 1, "WRITE", export=True)
        seed_grant(store, TEST_DB, ROLE_ID, basetypes.USER, "READ")

        grants = GrantResolver(store, TEST_DB).load(ROLE_ID)

        assert grants.level(1) == WRITE
        assert grants.level(basetypes.USER) == READ
        assert grants.can_export(1)
        assert not grants.can_export(basetypes.USER)

    def test_delete_and_mask_side_maps(self, store):
        grant = seed_grant(store, TEST_DB, ROLE_ID, basetypes.USER, "READ")
        store.insert(TEST_DB, grant, 3, basetypes.DELETE, "1")
        store.insert(TEST_DB, grant, 4, basetypes.MASK, "a%")

        grants = GrantResolver(store, TEST_DB).load(ROLE_ID)

        assert grants.delete_flags == {basetypes.USER}
        assert grants.masks == {basetypes.USER: {"a%": READ}}

    def test_no_role_no_grants(self, store):
        assert GrantResolver(store, TEST_DB).load(None).levels == {}


class TestFirstLevel:

    def test_root_grant_applies_to_top_level_types(self, store):
        resolver = GrantResolver(store, TEST_DB)
        assert resolver.first_level(GrantMap(levels={1: READ}), 500) == READ

    def test_access_through_referencing_type_is_capped_at_read(self, store):
        target = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "City")
        owner = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
        ref_row = store.insert(TEST_DB, 0, 0, target, "")
        store.insert(TEST_DB, owner, 1, ref_row, "City")
        resolver = GrantResolver(store, TEST_DB)

        assert resolver.first_level(GrantMap(levels={owner: WRITE}), target) == READ

    def test_nothing_granted(self, store):
        assert GrantResolver(store, TEST_DB).first_level(GrantMap(), 500) is False

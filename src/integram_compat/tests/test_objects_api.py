import pytest
from sqlalchemy import select

from integram_compat import basetypes
from integram_compat.api.dispatch import ACTION_ALIASES
from integram_compat.schema import seed_rows
from integram_compat.tests.fixtures import ROLE_ID, TEST_DB, login, seed_grant, seed_user

SECOND_DB = "mydb2"


def post(client, action, data=None, id=None):
    path = f"/{TEST_DB}/{action}" + (f"/{id}" if id is not None else "") + "?JSON"
    response = client.post(path, data=data or {})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def schema(auth_client):
    """Client type with City and a required Size, created through the API."""
    client_type = post(auth_client, "_d_new", {"val": "Client", "t": str(basetypes.CHARS)})["obj"]
    city = post(auth_client, "_d_req", {"val": "City", "t": str(basetypes.CHARS)}, id=client_type)["id"]
    size = post(auth_client, "_d_req", {"val": "Size", "t": str(basetypes.NUMBER), "required": "1"},
                id=client_type)["id"]
    return {"type": client_type, "city": city, "size": size}


@pytest.fixture
def acme(auth_client, schema):
    return post(auth_client, "_m_new", {"up": "1", "val": "Acme", f"t{schema['city']}": "NYC"},
                id=schema["type"])["id"]


class TestDefinitions:

    def test_create_type(self, auth_client, store):
        body = post(auth_client, "_d_new", {"val": "Client", "t": str(basetypes.CHARS), "unique": "1"})
        assert body["next_act"] == "edit_types"
        assert body["args"] == "ext"

        row = store.get(TEST_DB, body["obj"])
        assert (row.up, row.ord, row.t, row.val) == (0, 1, basetypes.CHARS, "Client")

    def test_type_name_required(self, auth_client):
        assert post(auth_client, "_d_new", {"t": "8"}) == [{"error": "Type name (val) is required"}]

    def test_requisites(self, schema, store):
        size = store.get(TEST_DB, schema["size"])
        assert size.up == schema["type"]
        assert size.ord == 2
        assert size.val == ":!NULL:Size"

    def test_toggle_required(self, auth_client, schema, store):
        post(auth_client, "_setnull", id=schema["size"])
        assert store.get(TEST_DB, schema["size"]).val == "Size"

    def test_move_requisite_up(self, auth_client, schema, store):
        post(auth_client, "_moveup", id=schema["size"])
        assert store.get(TEST_DB, schema["size"]).ord == 1
        assert store.get(TEST_DB, schema["city"]).ord == 2

    def test_reference_row_reused(self, auth_client, schema, store):
        first = post(auth_client, "_d_ref", id=schema["type"])["obj"]
        second = post(auth_client, "_references", id=schema["type"])["obj"]
        assert first == second

        row = store.get(TEST_DB, first)
        assert (row.up, row.t, row.val) == (0, schema["type"], "")

    def test_type_metadata(self, auth_client, schema):
        body = auth_client.get(f"/{TEST_DB}/metadata/{schema['type']}?JSON").json()
        assert body["val"] == "Client"
        assert [req["val"] for req in body["reqs"]] == ["CHARS", "NUMBER"]
        assert body["reqs"][1]["attrs"] == ":!NULL:Size"
        assert "attrs" not in body["reqs"][0]

    def test_missing_type_metadata(self, auth_client):
        response = auth_client.get(f"/{TEST_DB}/metadata/999999?JSON")
        assert response.status_code == 404
        assert response.json() == {"error": "Type not found"}

    def test_type_definition(self, auth_client, schema):
        body = auth_client.get(f"/{TEST_DB}/_d_main/{schema['type']}?JSON").json()
        assert [req["name"] for req in body["requisites"]] == ["City", "Size"]
        assert body["requisites"][1]["required"] is True


ALIAS_CASES = [
    ("_setalias", "city", {"alias": "town"}),
    ("_setnull", "size", {}),
    ("_setmulti", "city", {}),
    ("_setorder", "size", {"order": "1"}),
    ("_moveup", "size", {}),
    ("_deleteterm", "type", {}),
    ("_deletereq", "city", {}),
    ("_attributes", "type", {"val": "Phone", "t": str(basetypes.CHARS)}),
    ("_terms", None, {"val": "Order", "t": str(basetypes.CHARS)}),
    ("_references", "type", {}),
    ("_patchterm", "type", {"val": "Customer"}),
    ("_modifiers", "city", {"alias": "town", "required": "1"}),
]


def _schema_rows(store, db):
    z = store.table(db)
    private = (basetypes.PASSWORD, basetypes.TOKEN, basetypes.XSRF)
    return [tuple(row) for row in store.fetchall(select(z).where(z.c.t.notin_(private)).order_by(z.c.id))]


@pytest.fixture
def twins(client, store, user_id):
    """Two databases holding the same Client schema, d logged into both."""
    store.create(SECOND_DB, seed_rows(SECOND_DB))
    seed_grant(store, SECOND_DB, ROLE_ID, 1, "WRITE")
    seed_user(store, SECOND_DB, "d", "d", ROLE_ID)

    for db in (TEST_DB, SECOND_DB):
        login(client, db=db)
        client_type = store.insert(db, 0, 0, basetypes.CHARS, "Client")
        ids = {
            "type": client_type,
            "city": store.insert(db, client_type, 1, basetypes.CHARS, "City"),
            "size": store.insert(db, client_type, 2, basetypes.NUMBER, ":!NULL:Size"),
        }
    return ids


class TestActionAliases:

    def test_every_alias_is_covered(self):
        assert {alias for alias, _, _ in ALIAS_CASES} == set(ACTION_ALIASES)

    @pytest.mark.parametrize("alias,target,data", ALIAS_CASES, ids=[case[0] for case in ALIAS_CASES])
    def test_alias_answers_like_its_action(self, client, store, twins, alias, target, data):
        suffix = f"/{twins[target]}" if target else ""

        via_alias = client.post(f"/{TEST_DB}/{alias}{suffix}?JSON", data=data)
        via_action = client.post(f"/{SECOND_DB}/{ACTION_ALIASES[alias]}{suffix}?JSON", data=data)

        assert isinstance(via_alias.json(), dict)
        assert via_alias.content == via_action.content
        assert _schema_rows(store, TEST_DB) == _schema_rows(store, SECOND_DB)


class TestObjects:

    def test_create_object(self, auth_client, schema, store):
        body = post(auth_client, "_m_new", {"up": "1", "val": "Acme", f"t{schema['city']}": "NYC"}, id=schema["type"])

        assert body["val"] == "Acme"
        assert body["next_act"] == "edit_obj"
        assert store.get(TEST_DB, body["id"]).up == 1
        assert store.requisite(TEST_DB, body["id"], schema["city"]).val == "NYC"

    def test_create_with_type_query(self, auth_client, schema, store):
        response = auth_client.post(f"/{TEST_DB}/_m_new/1?JSON&type={schema['type']}", data={"val": "Globex"})
        row = store.get(TEST_DB, response.json()["id"])
        assert (row.up, row.t, row.val) == (1, schema["type"], "Globex")

    def test_reader_cannot_create(self, client, schema, reader_id):
        client.cookies.clear()
        token = login(client, user="reader", password="secret")["token"]
        response = client.post(f"/{TEST_DB}/_m_new/{schema['type']}?JSON", data={"up": "1", "val": "X"},
                               headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    def test_save_object(self, auth_client, schema, acme, store):
        body = post(auth_client, "_m_save", {"val": "Acme Inc", f"t{schema['size']}": "12 units"}, id=acme)

        assert body["obj"] == acme
        assert body["args"] == f"saved1=1&F_U=1&F_I={acme}"
        assert store.get(TEST_DB, acme).val == "Acme Inc"
        assert store.requisite(TEST_DB, acme, schema["size"]).val == "12"

    def test_save_overwrites_existing_value(self, auth_client, schema, acme, store):
        post(auth_client, "_m_save", {f"t{schema['city']}": "LA"}, id=acme)
        values = [row.val for row in store.children(TEST_DB, acme, t=schema["city"])]
        assert values == ["LA"]

    def test_copy_object(self, auth_client, schema, acme, store):
        body = post(auth_client, "_m_save", {"copybtn": "1"}, id=acme)
        copy = body["obj"]
        assert copy != acme
        assert store.requisite(TEST_DB, copy, schema["city"]).val == "NYC"

    def test_set_attributes(self, auth_client, schema, acme, store):
        body = post(auth_client, "_m_set", {f"t{schema['size']}": "7"}, id=acme)
        assert body["obj"] == str(acme)
        assert store.requisite(TEST_DB, acme, schema["size"]).val == "7"

    def test_overflowing_signed_value_is_kept_as_typed(self, auth_client, schema, acme, store):
        amount = post(auth_client, "_d_req", {"val": "Amount", "t": str(basetypes.SIGNED)}, id=schema["type"])["id"]

        body = post(auth_client, "_m_set", {f"t{amount}": "1e999"}, id=acme)

        assert body["obj"] == str(acme)
        assert store.requisite(TEST_DB, acme, amount).val == "1e999"

    def test_delete_object(self, auth_client, schema, acme, store):
        post(auth_client, "_m_del", id=acme)
        assert store.get(TEST_DB, acme) is None
        assert store.children(TEST_DB, acme) == []

    def test_delete_metadata_refused(self, auth_client, schema):
        body = post(auth_client, "_m_del", id=schema["type"])
        assert body[0]["error"].startswith("You can't delete metadata")

    def test_missing_object(self, auth_client):
        response = auth_client.post(f"/{TEST_DB}/_m_save/999999?JSON", data={"val": "x"})
        assert response.status_code == 404


class TestReferences:

    @pytest.fixture
    def order(self, auth_client, schema):
        order_type = post(auth_client, "_d_new", {"val": "Order", "t": str(basetypes.CHARS)})["obj"]
        ref_row = post(auth_client, "_d_ref", id=schema["type"])["obj"]
        customer = post(auth_client, "_d_req", {"val": "Customer", "t": str(ref_row)}, id=order_type)["id"]
        return {"type": order_type, "customer": customer}

    def test_linked_object_not_deleted(self, auth_client, order, acme, store):
        post(auth_client, "_m_new", {"up": "1", "val": "o1", f"t{order['customer']}": str(acme)}, id=order["type"])

        body = post(auth_client, "_m_del", id=acme)
        assert body == [{"error": "You can't delete an object that has links to it (total: 1)!"}]

        post(auth_client, "_m_del", {"cascade": "1"}, id=acme)
        assert store.get(TEST_DB, acme) is None

    def test_new_value_creates_referenced_object(self, auth_client, schema, order, store):
        o1 = post(auth_client, "_m_new", {"up": "1", "val": "o1"}, id=order["type"])["id"]
        post(auth_client, "_m_save", {f"NEW_{order['customer']}": "Globex"}, id=o1)

        linked = int(store.requisite(TEST_DB, o1, order["customer"]).val)
        row = store.get(TEST_DB, linked)
        assert (row.up, row.t, row.val) == (1, schema["type"], "Globex")

    def test_dropdown_formatting(self, auth_client, schema, acme):
        body = auth_client.get(f"/{TEST_DB}/_ref_reqs/{schema['type']}?JSON").json()
        assert body == {str(acme): "Acme / NYC / --"}

    def test_dropdown_search(self, auth_client, schema, acme):
        post(auth_client, "_m_new", {"up": "1", "val": "Globex"}, id=schema["type"])

        assert list(auth_client.get(f"/{TEST_DB}/_ref_reqs/{schema['type']}?JSON&q=NYC").json()) == [str(acme)]
        assert list(auth_client.get(f"/{TEST_DB}/_ref_reqs/{schema['type']}?JSON&q=@{acme}").json()) == [str(acme)]

    def test_dropdown_through_reference_requisite(self, auth_client, order, acme):
        body = auth_client.get(f"/{TEST_DB}/_ref_reqs/{order['customer']}?JSON").json()
        assert body == {str(acme): "Acme / NYC / --"}


class TestLists:

    def test_list(self, auth_client, schema, acme):
        body = auth_client.get(f"/{TEST_DB}/_list/{schema['type']}?JSON").json()
        assert body["total"] == 1
        assert body["data"][0]["val"] == "Acme"
        assert body["data"][0]["reqs"] == {str(schema["city"]): "NYC"}

    def test_list_filter(self, auth_client, schema, acme):
        post(auth_client, "_m_new", {"up": "1", "val": "Globex"}, id=schema["type"])
        body = auth_client.get(f"/{TEST_DB}/_list/{schema['type']}?JSON&f_{schema['city']}=NY").json()
        assert [row["val"] for row in body["data"]] == ["Acme"]

    def test_list_join(self, auth_client, schema, acme):
        body = auth_client.get(f"/{TEST_DB}/_list_join/{schema['type']}?JSON").json()
        assert body["data"] == [[acme, "Acme", "NYC", ""]]
        assert [req["val"] for req in body["requisites"]] == ["City", "Size"]

    def test_object_metadata(self, auth_client, schema):
        body = auth_client.get(f"/{TEST_DB}/obj_meta/{schema['type']}?JSON").json()
        assert body["reqs"]["1"]["id"] == str(schema["city"])
        assert body["reqs"]["2"]["type"] == str(basetypes.NUMBER)

    def test_terms(self, auth_client, schema):
        names = [term["name"] for term in auth_client.get(f"/{TEST_DB}/terms?JSON").json()]
        assert "Client" in names

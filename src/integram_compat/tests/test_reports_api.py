import pytest

from integram_compat import basetypes
from integram_compat.api.reports import compile_report, parse_filters, parse_limit
from integram_compat.tests.fixtures import TEST_DB


@pytest.fixture
def clients(store):
    """Client type with two objects and a report listing name, city and size."""
    client_type = store.insert(TEST_DB, 0, 0, basetypes.CHARS, "Client")
    city = store.insert(TEST_DB, client_type, 1, basetypes.CHARS, "City")
    size = store.insert(TEST_DB, client_type, 2, basetypes.NUMBER, "Size")

    for name, town, amount in (("Acme", "NYC", "10"), ("Globex", "LA", "5")):
        obj = store.insert(TEST_DB, 1, 1, client_type, name)
        store.insert(TEST_DB, obj, 1, city, town)
        store.insert(TEST_DB, obj, 2, size, amount)

    report = store.insert(TEST_DB, client_type, 9, basetypes.REPORT, "Clients")
    columns = [store.insert(TEST_DB, report, ord, basetypes.REP_COLS, str(req))
               for ord, req in enumerate((client_type, city, size), start=1)]
    return {"type": client_type, "report": report, "columns": columns}


class TestCompile:

    def test_columns(self, store, clients):
        report = compile_report(store, TEST_DB, clients["report"])
        assert report.parent_type == clients["type"]
        assert [column.name for column in report.columns] == ["Client", "City", "Size"]
        assert report.columns[0].main
        assert report.columns[2].format == "NUMBER"

    def test_filters_by_name_or_alias(self, store, clients):
        report = compile_report(store, TEST_DB, clients["report"])
        city = report.columns[1]

        by_name = parse_filters(report, {"FR_City": "N%"})
        by_alias = parse_filters(report, {f"EQ_{city.alias}": "NYC"})
        assert by_name[city.alias].start == "N%"
        assert by_alias[city.alias].equal == "NYC"

    def test_created_record_filter(self, store, clients):
        report = compile_report(store, TEST_DB, clients["report"])
        assert parse_filters(report, {"FR_ClientID": "42"})["_id"].equal == "42"

    @pytest.mark.parametrize("params,expected", [
        ({}, (10000, 0)),
        ({"LIMIT": "20"}, (20, 0)),
        ({"LIMIT": "40,20"}, (20, 40)),
        ({"LIMIT": "5", "F": "10"}, (5, 10)),
    ])
    def test_limit(self, params, expected):
        assert parse_limit(params) == expected


class TestReportApi:

    def url(self, clients, flags="JSON"):
        return f"/{TEST_DB}/report/{clients['report']}?{flags}"

    def test_key_value_rows(self, auth_client, clients):
        body = auth_client.get(self.url(clients, "JSON_KV")).json()
        assert body == [
            {"Client": "Acme", "City": "NYC", "Size": "10"},
            {"Client": "Globex", "City": "LA", "Size": "5"},
        ]

    def test_first_row(self, auth_client, clients):
        body = auth_client.get(self.url(clients, "JSON_DATA")).json()
        assert body == {"Client": "Acme", "City": "NYC", "Size": "10"}

    def test_column_rows(self, auth_client, clients):
        body = auth_client.get(self.url(clients, "JSON_CR")).json()
        assert body["totalCount"] == 2
        assert body["rows"]["1"][str(clients["columns"][1])] == "LA"

    def test_column_major(self, auth_client, clients):
        body = auth_client.get(self.url(clients, "JSON&execute=1")).json()

        names = [column["name"] for column in body["columns"]]
        assert names == ["Client", "ClientID", "City", "Size"]
        assert body["data"][0] == ["Acme", "Globex"]
        assert body["columns"][3]["totals"] == 15
        assert body["rownum"] == 2

    def test_definition(self, auth_client, clients):
        body = auth_client.get(self.url(clients)).json()
        assert body["name"] == "Clients"
        assert body["head"] == ["Client", "City", "Size"]

    def test_record_count(self, auth_client, clients):
        assert auth_client.get(self.url(clients, "JSON&RECORD_COUNT")).json() == {"count": 2}
        assert auth_client.get(self.url(clients, "JSON&RECORD_COUNT&EQ_City=NYC")).json() == {"count": 1}

    def test_like_filter(self, auth_client, clients):
        body = auth_client.get(self.url(clients, "JSON_KV&FR_City=L%25")).json()
        assert [row["Client"] for row in body] == ["Globex"]

    def test_order_and_limit(self, auth_client, clients):
        city_column = clients["columns"][1]
        body = auth_client.get(self.url(clients, f"JSON_KV&ORDER={city_column}")).json()
        assert [row["Client"] for row in body] == ["Globex", "Acme"]

        body = auth_client.get(self.url(clients, "JSON_KV&LIMIT=1,1")).json()
        assert [row["Client"] for row in body] == ["Globex"]

    def test_post_with_action_in_body(self, auth_client, clients):
        response = auth_client.post(f"/{TEST_DB}?JSON_KV", data={"action": "report", "id": str(clients["report"])})
        assert len(response.json()) == 2

    def test_report_id_required_in_body(self, auth_client):
        response = auth_client.post(f"/{TEST_DB}?JSON", data={"action": "report"})
        assert response.json() == [{"error": "Report ID required"}]

    def test_listing(self, auth_client, clients):
        body = auth_client.get(f"/{TEST_DB}/report?JSON").json()
        assert {"id": clients["report"], "name": "Clients", "val": "Clients", "ord": 9} in body

    def test_missing_report(self, auth_client):
        response = auth_client.get(f"/{TEST_DB}/report/999999?JSON")
        assert response.status_code == 404
        assert response.json() == {"error": "Report not found"}

    def test_csv(self, auth_client, clients):
        response = auth_client.get(self.url(clients, "JSON&execute=1&format=csv"))
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[1] == '"Acme","NYC","10"'

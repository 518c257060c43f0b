"""Tests for the HTTP API, using an in-memory database per test."""

import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app, import_lock
from spreadsheet import (
    COLUMNS,
    TEMPLATE_ROWS,
    XLSX_MEDIA_TYPE,
    read_workbook_records,
    template_workbook,
    write_csv,
)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def create(client, **fields):
    response = client.post("/members", json=fields)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def couple(client):
    mucksin = create(client, name="Mucksin", gender="L", generation=1)
    supiyah = create(client, name="Supiyah", gender="P", generation=1, spouseId=mucksin["id"])
    return mucksin, supiyah


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "members": 0}


class TestMembersCrud:

    def test_create_returns_detail(self, client, couple):
        mucksin, supiyah = couple
        assert supiyah["spouseId"] == mucksin["id"]
        assert supiyah["spouse"]["name"] == "Mucksin"
        assert supiyah["children"] == []
        assert supiyah["gender"] == "P"

    def test_create_links_spouse_both_ways(self, client, couple):
        mucksin, supiyah = couple
        detail = client.get(f"/members/{mucksin['id']}").json()
        assert detail["spouseId"] == supiyah["id"]

    def test_create_requires_name_and_gender(self, client):
        assert client.post("/members", json={"gender": "L"}).status_code == 422
        assert client.post("/members", json={"name": "Budi"}).status_code == 422
        assert client.post("/members", json={"name": "Budi", "gender": "X"}).status_code == 422

    def test_create_rejects_bad_generation(self, client):
        response = client.post("/members", json={"name": "Budi", "gender": "L", "generation": 0})
        assert response.status_code == 422

    def test_create_rejects_missing_parent(self, client):
        response = client.post(
            "/members", json={"name": "Budi", "gender": "L", "generation": 2, "parentId": "missing"}
        )
        assert response.status_code == 400
        assert "Parent not found" in response.json()["detail"]

    def test_list_ordered(self, client):
        create(client, name="Zaki", gender="L", generation=2)
        create(client, name="Ani", gender="P", generation=2)
        create(client, name="Budi", gender="L", generation=1)
        names = [m["name"] for m in client.get("/members").json()["members"]]
        assert names == ["Budi", "Ani", "Zaki"]

    def test_get_missing(self, client):
        assert client.get("/members/missing").status_code == 404

    def test_detail_lists_children(self, client, couple):
        mucksin, _ = couple
        create(client, name="Ahmad", gender="L", generation=2, parentId=mucksin["id"])
        detail = client.get(f"/members/{mucksin['id']}").json()
        assert [c["name"] for c in detail["children"]] == ["Ahmad"]

    def test_update_partial(self, client, couple):
        mucksin, _ = couple
        response = client.put(f"/members/{mucksin['id']}", json={"job": "Petani"})
        assert response.status_code == 200
        body = response.json()
        assert body["job"] == "Petani"
        assert body["name"] == "Mucksin"
        assert body["spouse"]["name"] == "Supiyah"

    def test_update_null_spouse_unlinks(self, client, couple):
        mucksin, supiyah = couple
        client.put(f"/members/{mucksin['id']}", json={"spouseId": None})
        assert client.get(f"/members/{supiyah['id']}").json()["spouseId"] is None

    def test_update_self_spouse_rejected(self, client, couple):
        mucksin, _ = couple
        response = client.put(f"/members/{mucksin['id']}", json={"spouseId": mucksin["id"]})
        assert response.status_code == 400

    def test_update_missing(self, client):
        assert client.put("/members/missing", json={"job": "Petani"}).status_code == 404

    def test_delete_cleans_up(self, client, couple):
        mucksin, supiyah = couple
        ahmad = create(client, name="Ahmad", gender="L", generation=2, parentId=mucksin["id"])

        response = client.delete(f"/members/{mucksin['id']}")
        assert response.json() == {"success": True}

        assert client.get(f"/members/{mucksin['id']}").status_code == 404
        assert client.get(f"/members/{supiyah['id']}").json()["spouseId"] is None
        assert client.get(f"/members/{ahmad['id']}").json()["parentId"] is None

    def test_delete_missing(self, client):
        assert client.delete("/members/missing").status_code == 404


class TestFamily:

    def test_family_view(self, client, couple):
        mucksin, _ = couple
        create(client, name="Ahmad", gender="L", generation=2, parentId=mucksin["id"])

        body = client.get("/family").json()
        assert len(body["members"]) == 3
        by_name = {m["name"]: m for m in body["members"]}
        assert by_name["Mucksin"]["spouse"]["name"] == "Supiyah"
        assert by_name["Ahmad"]["spouse"] is None

        (root,) = body["rootMembers"]
        assert root["name"] == "Mucksin"
        assert root["spouse"]["name"] == "Supiyah"
        assert [c["name"] for c in root["children"]] == ["Ahmad"]

        assert body["stats"] == {"totalMembers": 3, "generations": 2, "maleCount": 2, "femaleCount": 1}
        assert body["warnings"] == []

    def test_tree(self, client, couple):
        tree = client.get("/tree").json()["tree"]
        assert [n["name"] for n in tree] == ["Mucksin"]

    def test_empty_family(self, client):
        body = client.get("/family").json()
        assert body["rootMembers"] == []
        assert body["stats"]["totalMembers"] == 0


class TestImport:

    ROWS = [
        {"Nama Lengkap": "Mucksin", "Jenis Kelamin": "Laki-laki", "Generasi": 1, "Nama Pasangan": "Supiyah"},
        {"Nama Lengkap": "Supiyah", "Jenis Kelamin": "Perempuan", "Generasi": 1},
        {"Nama Lengkap": "Ahmad Susanto", "Jenis Kelamin": "L", "Generasi": 2, "Nama Pasangan": "Dewi Rahayu"},
        {"Nama Lengkap": "Dewi Rahayu", "Jenis Kelamin": "P", "Generasi": 2},
        {"Nama Lengkap": "Rina", "Jenis Kelamin": "P", "Generasi": 3,
         "Nama Orangtua": "Ahmad Susanto - Dewi Rahayu"},
    ]

    def test_json_import_report(self, client):
        response = client.post("/members/import?mode=replace", json={"rows": self.ROWS})
        assert response.status_code == 200
        report = response.json()
        assert report["mode"] == "replace"
        assert report["totalRows"] == 5
        assert report["inserted"] == 5
        assert report["withSpouse"] == 4
        assert report["withParent"] == 2
        assert report["failed"] == []

        (root,) = client.get("/tree").json()["tree"]
        assert root["name"] == "Mucksin"

    def test_merge_is_default(self, client):
        client.post("/members/import?mode=replace", json={"rows": self.ROWS})
        report = client.post("/members/import", json={"rows": self.ROWS}).json()
        assert report["mode"] == "merge"
        assert report["skippedExisting"] == 5
        assert len(client.get("/members").json()["members"]) == 5

    def test_invalid_mode(self, client):
        response = client.post("/members/import?mode=upsert", json={"rows": self.ROWS})
        assert response.status_code == 422

    def test_empty_rows(self, client):
        assert client.post("/members/import", json={"rows": []}).status_code == 400

    def test_concurrent_import_rejected(self, client):
        import_lock.acquire()
        try:
            response = client.post("/members/import", json={"rows": self.ROWS})
        finally:
            import_lock.release()
        assert response.status_code == 409

    def test_upload_workbook(self, client):
        response = client.post(
            "/members/import/upload?mode=replace",
            files={"file": ("anggota.xlsx", template_workbook(), XLSX_MEDIA_TYPE)},
        )
        assert response.status_code == 200
        report = response.json()
        assert report["inserted"] == 4
        assert report["diagnostics"] == []
        members = {m["name"]: m for m in client.get("/members").json()["members"]}
        assert members["Ahmad Susanto"]["parentId"] == members["Mucksin"]["id"]
        assert members["Ahmad Susanto"]["spouseId"] == members["Dewi Rahayu"]["id"]
        assert members["Dewi Rahayu"]["parentId"] is None
        assert members["Mucksin"]["phone"] == "08123456789"

    def test_upload_csv(self, client):
        content = write_csv(TEMPLATE_ROWS).encode("utf-8-sig")
        response = client.post(
            "/members/import/upload?mode=replace",
            files={"file": ("anggota.csv", content, "text/csv")},
        )
        assert response.status_code == 200
        report = response.json()
        assert report["inserted"] == 4
        members = {m["name"]: m for m in client.get("/members").json()["members"]}
        assert members["Ahmad Susanto"]["parentId"] == members["Mucksin"]["id"]
        assert members["Mucksin"]["spouseId"] == members["Supiyah"]["id"]

    def test_upload_rejects_other_files(self, client):
        response = client.post(
            "/members/import/upload",
            files={"file": ("anggota.txt", b"Nama Lengkap\nMucksin\n", "text/plain")},
        )
        assert response.status_code == 400
        assert ".xlsx" in response.json()["detail"]

    def test_upload_rejects_corrupt_workbook(self, client):
        response = client.post(
            "/members/import/upload",
            files={"file": ("anggota.xlsx", b"PK\x03\x04", XLSX_MEDIA_TYPE)},
        )
        assert response.status_code == 400

    def test_failed_replace_keeps_members(self, client):
        client.post("/members/import?mode=replace", json={"rows": self.ROWS})
        report = client.post(
            "/members/import?mode=replace", json={"rows": [{"Nama Lengkap": "", "Generasi": "inf"}]}
        ).json()
        assert len(report["failed"]) == 1
        assert len(client.get("/members").json()["members"]) == 5


class TestExport:

    @pytest.fixture
    def family(self, client, couple):
        mucksin, _ = couple
        create(client, name="Ahmad", gender="L", generation=2, parentId=mucksin["id"])

    def test_export_workbook(self, client, family):
        response = client.get("/members/export")
        assert response.status_code == 200
        assert response.headers["content-type"] == XLSX_MEDIA_TYPE
        assert ".xlsx" in response.headers["content-disposition"]

        records = read_workbook_records(response.content)
        assert [r["Nama Lengkap"] for r in records] == ["Mucksin", "Supiyah", "Ahmad"]
        assert records[2]["Nama Orangtua"] == "Mucksin"
        assert records[0]["Nama Pasangan"] == "Supiyah"

    def test_export_csv(self, client, family):
        response = client.get("/members/export?format=csv")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "anggota-keluarga-" in response.headers["content-disposition"]
        assert ".csv" in response.headers["content-disposition"]

        lines = response.text.splitlines()
        assert lines[0] == ",".join(COLUMNS)
        assert len(lines) == 4
        assert "Ahmad,Laki-laki,,,2,Mucksin," in lines[3]

    def test_export_unknown_format(self, client):
        assert client.get("/members/export?format=pdf").status_code == 422

    def test_template(self, client):
        response = client.get("/members/template")
        assert response.status_code == 200
        assert "template-anggota-keluarga.xlsx" in response.headers["content-disposition"]
        records = read_workbook_records(response.content)
        assert [r["Nama Lengkap"] for r in records] == [row["Nama Lengkap"] for row in TEMPLATE_ROWS]

    def test_template_csv(self, client):
        response = client.get("/members/template?format=csv")
        assert "template-anggota-keluarga.csv" in response.headers["content-disposition"]
        assert "Dewi Rahayu" in response.text


class TestDatabase:

    def test_backup_document(self, client, couple):
        body = client.get("/database/backup").json()
        assert body["version"] == "1.0"
        assert body["appName"]
        assert body["exportedAt"]
        assert sorted(m["name"] for m in body["data"]["members"]) == ["Mucksin", "Supiyah"]

    def test_restore_round_trip(self, client, couple):
        mucksin, supiyah = couple
        create(client, name="Ahmad", gender="L", generation=2, parentId=mucksin["id"])
        backup = client.get("/database/backup").json()

        client.post("/database/reset")
        create(client, name="Someone Else", gender="P", generation=1)

        response = client.post("/database/restore", json=backup)
        assert response.status_code == 200
        assert response.json() == {"success": True, "stats": {"members": 3}}

        restored = client.get(f"/members/{mucksin['id']}").json()
        assert restored["spouseId"] == supiyah["id"]
        assert [c["name"] for c in restored["children"]] == ["Ahmad"]
        names = [m["name"] for m in client.get("/members").json()["members"]]
        assert "Someone Else" not in names

    def test_restore_invalid_backup(self, client, couple):
        backup = client.get("/database/backup").json()
        backup["data"]["members"][0]["gender"] = "X"
        response = client.post("/database/restore", json=backup)
        assert response.status_code == 400
        assert len(client.get("/members").json()["members"]) == 2

    def test_restore_requires_data(self, client):
        assert client.post("/database/restore", json={"version": "1.0"}).status_code == 422

    def test_reset(self, client, couple):
        response = client.post("/database/reset")
        assert response.json() == {"success": True, "deleted": 2}
        assert client.get("/health").json()["members"] == 0

    @pytest.mark.parametrize("path,payload", [
        ("/database/reset", None),
        ("/database/restore", {"data": {"members": []}}),
    ])
    def test_rejected_while_importing(self, client, couple, path, payload):
        import_lock.acquire()
        try:
            response = client.post(path, json=payload)
        finally:
            import_lock.release()
        assert response.status_code == 409
        assert len(client.get("/members").json()["members"]) == 2

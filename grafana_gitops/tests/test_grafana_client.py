import json

import httpx
import pytest


def make_client(bridge, handler, **kwargs):
    return bridge.grafana_client.GrafanaClient(
        "http://grafana.test/",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_requests_use_bearer_token_and_api_prefix(bridge) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"dashboard": {"uid": "d1", "title": "A"}, "meta": {"version": 3}})

    client = make_client(bridge, handler, api_key="token")
    data = client.get_dashboard("d1")

    assert data["meta"]["version"] == 3
    assert seen[0].url.path == "/api/dashboards/uid/d1"
    assert seen[0].headers["Authorization"] == "Bearer token"


def test_basic_auth_without_api_key(bridge) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    make_client(bridge, handler, username="admin", password="secret").list_folders()

    assert seen[0].headers["Authorization"].startswith("Basic ")


def test_search_follows_pages(bridge, monkeypatch) -> None:
    monkeypatch.setattr(bridge.grafana_client, "SEARCH_PAGE_SIZE", 2)
    pages = {
        "1": [{"uid": "a", "type": "dash-db"}, {"uid": "b", "type": "dash-db"}],
        "2": [{"uid": "c", "type": "dash-folder"}],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["limit"] == "2"
        return httpx.Response(200, json=pages[request.url.params["page"]])

    results = make_client(bridge, handler).search()

    assert [entry["uid"] for entry in results] == ["a", "b", "c"]


def test_list_library_elements_pages_until_total_count(bridge) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        page = int(request.url.params["page"])
        elements = [{"uid": f"l{page}", "name": f"Lib {page}"}]
        return httpx.Response(200, json={"result": {"elements": elements, "totalCount": 2}})

    elements = make_client(bridge, handler).list_library_elements()

    assert [element["uid"] for element in elements] == ["l1", "l2"]


@pytest.mark.parametrize(
    "status, error_name",
    [(404, "NotFound"), (409, "VersionConflict"), (412, "VersionConflict"), (500, "GrafanaError")],
)
def test_error_statuses_map_to_exceptions(bridge, status, error_name) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "nope"})

    error_class = getattr(bridge.grafana_client, error_name)
    with pytest.raises(error_class) as excinfo:
        make_client(bridge, handler).delete_dashboard("d1")
    assert excinfo.value.status_code == status


def test_transport_failure_is_a_grafana_error(bridge) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(bridge.grafana_client.GrafanaError) as excinfo:
        make_client(bridge, handler).search()
    assert excinfo.value.status_code == 502


def test_dashboard_write_without_version_overwrites(bridge) -> None:
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"status": "success", "version": 5})

    client = make_client(bridge, handler)
    version = client.create_or_update_dashboard({"uid": "d1", "title": "A", "version": 9}, "f1")
    client.create_or_update_dashboard({"uid": "d1", "title": "A"}, "f1", folder_id=12, version=4)

    assert version == 5
    first, second = payloads
    assert first["overwrite"] is True
    assert first["folderUid"] == "f1"
    assert first["dashboard"]["id"] is None
    assert "version" not in first["dashboard"]
    assert "folderId" not in first
    assert second["overwrite"] is False
    assert second["dashboard"]["version"] == 4
    assert second["folderId"] == 12


def test_library_create_falls_back_to_patch(bridge) -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path, json.loads(request.content)))
        if request.method == "POST":
            return httpx.Response(400, json={"message": "library element with that uid already exists"})
        return httpx.Response(200, json={"result": {"uid": "l1", "version": 4}})

    version = make_client(bridge, handler).create_or_update_library(
        {"uid": "l1", "name": "CPU", "kind": 1, "model": {"type": "graph"}}, "f1", folder_id=7, version=3
    )

    assert version == 4
    assert [(method, path) for method, path, _ in requests] == [
        ("POST", "/api/library-elements"),
        ("PATCH", "/api/library-elements/l1"),
    ]
    patch_payload = requests[1][2]
    assert patch_payload["version"] == 3
    assert patch_payload["folderId"] == 7
    assert patch_payload["folderUid"] == "f1"


def test_folder_create_falls_back_to_update(bridge) -> None:
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(409, json={"message": "a folder with the same uid already exists"})
        return httpx.Response(200, json={"uid": "f1", "title": "Ops"})

    make_client(bridge, handler).create_or_update_folder("f1", "Ops")

    assert requests == [("POST", "/api/folders"), ("PUT", "/api/folders/f1")]

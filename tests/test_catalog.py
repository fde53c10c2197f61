import httpx

from paygate.catalog import ServiceCatalog, find_service

from conftest import RESOURCE_URL


async def test_unconfigured_catalog_makes_no_calls(make_settings, client, resource_server):
    result = await ServiceCatalog(make_settings(resource_service_url="  "), client).discover()

    assert result.configured is False
    assert result.services == []
    assert result.error == "RESOURCE_SERVICE_URL not configured"
    assert resource_server.requests == []


async def test_discovery_passes_entries_through(make_settings, client, resource_server):
    odd_entry = {"id": "raw", "unexpected": True}
    resource_server.services.append(odd_entry)

    result = await ServiceCatalog(make_settings(resource_service_url=RESOURCE_URL + "/"), client).discover()

    assert result.configured is True
    assert result.error is None
    assert result.server_url == RESOURCE_URL
    assert [entry["id"] for entry in result.services] == ["svc1", "raw"]
    assert result.services[1] == odd_entry
    request = resource_server.requests[0]
    assert request.headers["cache-control"] == "no-store"


async def test_server_error_is_reported_in_the_result(make_settings, client, resource_server):
    resource_server.discovery_status = 500

    result = await ServiceCatalog(make_settings(), client).discover()

    assert result.services == []
    assert result.configured is True
    assert result.error.startswith("Failed to fetch services: 500")


async def test_connection_failure_is_reported_in_the_result(make_settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        result = await ServiceCatalog(make_settings(), client).discover()

    assert result.services == []
    assert result.configured is True
    assert result.error == "Failed to connect to resource server: connection refused"


async def test_non_list_services_become_empty(make_settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"services": {"a": 1}}))
    async with httpx.AsyncClient(transport=transport) as client:
        result = await ServiceCatalog(make_settings(), client).discover()

    assert result.services == []
    assert result.error is None


def test_find_service_skips_malformed_entries():
    entries = ["junk", {"title": "no id"}, {"id": "svc1"}]
    assert find_service(entries, "svc1") == {"id": "svc1"}
    assert find_service(entries, "missing") is None

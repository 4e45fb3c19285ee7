import json

import httpx
import pytest

from patent_watch.models.patent import PatentRecord, XmlProduct
from patent_watch.utils.config import Settings
from patent_watch.utils.errors import ConfigurationError
from patent_watch.utils.uspto_client import (
    FIELD_PATHS, USPTOClient, deep_get, mentions_name, record_from_result
)

FILES = "/api/v1/datasets/products/files"


def row(app, applicant, title="Ledger sharding", inventor=None):
    metadata = {
        "inventionTitle": title,
        "applicantBag": [{"applicantNameText": applicant}],
        "inventorBag": [{"inventorNameText": inventor}] if inventor else [],
    }
    return {"applicationNumberText": app, "applicationMetaData": metadata}


def make_client(settings, handler):
    return USPTOClient(settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestDecoding:
    """Test schema-tolerant decoding of search rows."""

    def test_deep_get_tries_paths_in_order(self):
        doc = {"applicationMetaData": {"inventionTitle": "  Nested  "}, "patentTitle": ""}

        assert deep_get(doc, FIELD_PATHS["title"]) == "Nested"

    def test_deep_get_accepts_numbers(self):
        assert deep_get({"applicationNumber": 15456067}, FIELD_PATHS["application_number"]) == "15456067"

    def test_record_from_result(self):
        record = record_from_result(row("15/456,067", "Inveniam Capital Partners", inventor="Paul Snow"))

        assert record.application_number == "15456067"
        assert record.title == "Ledger sharding"
        assert record.applicants == ["Inveniam Capital Partners"]
        assert record.inventors == ["Paul Snow"]

    def test_rows_without_application_number_are_dropped(self):
        assert record_from_result({"inventionTitle": "No number"}) is None

    def test_mentions_name_ignores_short_words(self):
        record = PatentRecord(application_number="1", applicants=["IBM Corp of NY"])

        assert not mentions_name(record, "AB Co")
        assert mentions_name(record, "The IBM")


class TestSearch:
    """Test applicant search and the quoted-name fallback."""

    @pytest.mark.asyncio
    async def test_results_are_unique_across_names(self, settings):
        responses = {
            "Acme": [row("100", "Acme"), row("200", "Acme")],
            "Acme Corp": [row("200", "Acme Corp"), row("300", "Acme Corp")],
        }

        def handler(request):
            body = json.loads(request.content)
            name = body["filters"][0]["value"][0]
            return httpx.Response(200, json={"results": responses[name]})

        client = make_client(settings, handler)
        records = await client.search(["Acme", "Acme Corp"])

        assert [r.application_number for r in records] == ["100", "200", "300"]
        assert records[1].applicants == ["Acme"]

    @pytest.mark.asyncio
    async def test_quoted_fallback_filters_by_party_names(self, settings):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            if "filters" in body:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json={"patentFileWrapperDataBag": [
                row("100", "Acme Ledger Inc"),
                row("200", "Other Corp", inventor="Jane Doe"),
            ]})

        client = make_client(settings, handler)
        records = await client.search(["Acme Ledger"])

        assert [r.application_number for r in records] == ["100"]
        assert bodies[1]["q"] == '"Acme Ledger"'
        assert uses_page_size(bodies)

    @pytest.mark.asyncio
    async def test_failing_name_is_skipped(self, settings):
        def handler(request):
            name = json.loads(request.content)["filters"][0]["value"][0]
            if name == "Broken":
                return httpx.Response(500)
            return httpx.Response(200, json={"results": [row("100", name)]})

        client = make_client(settings, handler)
        records = await client.search(["Broken", "", "Acme"])

        assert [r.application_number for r in records] == ["100"]

    @pytest.mark.asyncio
    async def test_api_key_header(self, settings):
        seen = {}

        def handler(request):
            seen["key"] = request.headers.get("X-API-KEY")
            return httpx.Response(404)

        await make_client(settings, handler).search(["Acme"])

        assert seen["key"] == "test-uspto-key"

    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError):
            USPTOClient(Settings())


def uses_page_size(bodies):
    return all(body["pagination"]["limit"] == 25 for body in bodies)


class TestFetchXml:
    """Test the ordered XML retrieval strategies."""

    @pytest.mark.asyncio
    async def test_falls_back_from_grant_to_application(self, settings, grant_xml):
        requested = []

        def handler(request):
            requested.append((request.url.path, dict(request.url.params)))
            if request.url.path == f"{FILES}/PTGRXML-SPLT":
                return httpx.Response(200, json={"files": []})
            if request.url.path == f"{FILES}/APPXML-SPLT":
                return httpx.Response(200, json={"files": [{"fileUrl": "https://bulk.example/app.xml"}]})
            if request.url.host == "bulk.example":
                return httpx.Response(200, text=grant_xml)
            return httpx.Response(404)

        client = make_client(settings, handler)
        result = await client.fetch_xml("15456067", "10411897")

        assert result.product == XmlProduct.APPLICATION
        assert result.xml_url == "https://bulk.example/app.xml"
        assert result.abstract.startswith("A blockchain is sharded")
        assert requested[0] == (f"{FILES}/PTGRXML-SPLT", {"applicationNumberText": "15456067"})

    @pytest.mark.asyncio
    async def test_direct_lookup_builds_bulk_path(self, settings, grant_xml):
        direct = f"{FILES}/PTGRXML-SPLT/2019/ipg190910/15456067_10411897.xml"

        def handler(request):
            path = request.url.path
            if path == direct:
                return httpx.Response(200, text=grant_xml)
            if path.startswith(FILES):
                return httpx.Response(200, json={"files": []})
            if path == "/api/v1/patent/applications/15456067":
                return httpx.Response(200, json={"patentFileWrapperDataBag": [
                    {"applicationMetaData": {"grantDate": "2019-09-10", "filingDate": "2017-03-10"}}
                ]})
            return httpx.Response(404)

        result = await make_client(settings, handler).fetch_xml("15456067", "10411897")

        assert result.product == XmlProduct.GRANT
        assert result.xml_url.endswith("/PTGRXML-SPLT/2019/ipg190910/15456067_10411897.xml")

    @pytest.mark.asyncio
    async def test_short_bodies_do_not_count(self, settings):
        def handler(request):
            if request.url.path.startswith(FILES) and not request.url.path.endswith(".xml"):
                return httpx.Response(200, json={"files": [{"fileUrl": "https://bulk.example/a.xml"}]})
            if request.url.host == "bulk.example":
                return httpx.Response(200, text="<error/>")
            return httpx.Response(404)

        assert await make_client(settings, handler).fetch_xml("15456067") is None

    @pytest.mark.asyncio
    async def test_network_errors_mean_none(self, settings):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        assert await make_client(settings, handler).fetch_xml("15456067", "10411897") is None


class TestDetails:
    """Test identifier resolution and associated documents."""

    @pytest.mark.asyncio
    async def test_resolve_identifiers_fills_gaps(self, settings):
        def handler(request):
            return httpx.Response(200, json={"patentFileWrapperDataBag": [{"applicationMetaData": {
                "patentNumber": "10411897", "grantDate": "2019-09-10", "earliestPublicationNumber": "US20180260000A1"
            }}]})

        record = PatentRecord(application_number="15456067", title="Ledger")
        resolved = await make_client(settings, handler).resolve_identifiers(record)

        assert resolved.patent_number == "10411897"
        assert resolved.publication_number == "US20180260000A1"
        assert resolved.grant_date == "2019-09-10"
        assert resolved.title == "Ledger"

    @pytest.mark.asyncio
    async def test_resolve_identifiers_keeps_record_on_failure(self, settings):
        record = PatentRecord(application_number="15456067")

        resolved = await make_client(settings, lambda request: httpx.Response(500)).resolve_identifiers(record)

        assert resolved == record

    @pytest.mark.asyncio
    async def test_fetch_associated_xml_prefers_grant(self, settings, grant_xml):
        def handler(request):
            if request.url.path.endswith("/associated-documents"):
                return httpx.Response(200, json={"patentFileWrapperDataBag": [{
                    "pgpubDocumentMetaData": {"fileLocationURI": "https://bulk.example/pub.xml"},
                    "grantDocumentMetaData": {"fileLocationURI": "https://bulk.example/grant.xml"},
                }]})
            if request.url.path == "/grant.xml":
                return httpx.Response(200, text=grant_xml)
            return httpx.Response(404)

        result = await make_client(settings, handler).fetch_associated_xml("15456067")

        assert result.product == XmlProduct.GRANT
        assert result.xml_url == "https://bulk.example/grant.xml"

"""Unit tests for the Confluence REST client using httpx.MockTransport."""

import json

import httpx
import pytest

from publish_confluence.confluence.client import ConfluenceAuth, ConfluenceClient
from publish_confluence.errors import (
    AuthenticationError,
    BadRequestError,
    ConfluenceApiError,
    PageAlreadyExistsError,
    ResourceNotFoundError,
    TransportError,
    VersionConflictError,
)

BASE_URL = "https://confluence.example.com"


def page_payload(page_id="123", title="Root", version=1, ancestors=()):
    return {
        "id": page_id,
        "title": title,
        "version": {"number": version},
        "space": {"key": "DOCS"},
        "ancestors": [{"id": ancestor} for ancestor in ancestors],
    }


class Recorder:
    """Mock transport handler that replays ``responses`` and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def make_client(handler, auth=None):
    return ConfluenceClient(
        base_url=BASE_URL + "/",
        auth=auth or ConfluenceAuth(token="secret"),
        retry_backoff=0,
        transport=httpx.MockTransport(handler),
    )


class TestClientConstruction:
    """Test cases for ConfluenceClient construction."""

    def test_requires_credentials(self):
        """ConfluenceClient should refuse to start without a token or email and API token."""
        with pytest.raises(ValueError):
            ConfluenceClient(base_url=BASE_URL, auth=ConfluenceAuth(email="me@example.com"))

    def test_strips_trailing_slash_from_base_url(self):
        """base_url should be usable as a prefix for download links."""
        assert make_client(Recorder()).base_url == BASE_URL


class TestFindPage:
    """Test cases for find_page_by_title."""

    @pytest.mark.asyncio
    async def test_returns_matching_page(self):
        """find_page_by_title should query by space and title and parse the result."""
        handler = Recorder(httpx.Response(200, json={"results": [page_payload(version=4, ancestors=("1", "9"))]}))

        async with make_client(handler) as client:
            page = await client.find_page_by_title("DOCS", "Root")

        request = handler.requests[0]
        assert request.url.path == "/rest/api/content"
        assert request.url.params["spaceKey"] == "DOCS"
        assert request.url.params["title"] == "Root"
        assert request.url.params["expand"] == "version,space,ancestors"
        assert request.headers["Authorization"] == "Bearer secret"
        assert request.headers["X-Atlassian-Token"] == "nocheck"
        assert page.id == "123"
        assert page.version == 4
        assert page.parent_id == "9"

    @pytest.mark.asyncio
    async def test_returns_none_without_results(self):
        """find_page_by_title should return None when nothing matches."""
        handler = Recorder(httpx.Response(200, json={"results": []}))

        async with make_client(handler) as client:
            assert await client.find_page_by_title("DOCS", "Missing") is None

    @pytest.mark.asyncio
    async def test_uses_basic_auth_with_email_and_api_token(self):
        """ConfluenceClient should fall back to basic authentication."""
        handler = Recorder(httpx.Response(200, json={"results": []}))

        async with make_client(handler, ConfluenceAuth(email="me@example.com", api_token="tok")) as client:
            await client.find_page_by_title("DOCS", "Root")

        assert handler.requests[0].headers["Authorization"].startswith("Basic ")


class TestCreateAndUpdate:
    """Test cases for page creation and updates."""

    @pytest.mark.asyncio
    async def test_create_sends_parent_as_ancestor(self):
        """create_page should nest the new page below the given parent id."""
        handler = Recorder(httpx.Response(200, json=page_payload(page_id="200", ancestors=("9",))))

        async with make_client(handler) as client:
            page = await client.create_page("DOCS", "Root", "<p>hi</p>", parent_id="9")

        body = json.loads(handler.requests[0].content)
        assert handler.requests[0].method == "POST"
        assert body["ancestors"] == [{"id": "9"}]
        assert body["space"] == {"key": "DOCS"}
        assert body["body"]["storage"] == {"value": "<p>hi</p>", "representation": "storage"}
        assert page.id == "200"

    @pytest.mark.asyncio
    async def test_create_translates_title_conflict(self):
        """create_page should raise PageAlreadyExistsError for a taken title."""
        handler = Recorder(
            httpx.Response(400, json={"message": "A page with this title already exists: Root"})
        )

        async with make_client(handler) as client:
            with pytest.raises(PageAlreadyExistsError):
                await client.create_page("DOCS", "Root", "<p/>")

    @pytest.mark.asyncio
    async def test_update_sends_next_version(self):
        """update_page should send the observed version plus one."""
        handler = Recorder(httpx.Response(200, json=page_payload(version=5)))

        async with make_client(handler) as client:
            page = await client.update_page("123", "Root", "<p/>", 4)

        body = json.loads(handler.requests[0].content)
        assert handler.requests[0].method == "PUT"
        assert handler.requests[0].url.path == "/rest/api/content/123"
        assert body["version"]["number"] == 5
        assert page.version == 5

    @pytest.mark.asyncio
    async def test_update_translates_version_conflict(self):
        """update_page should raise VersionConflictError on HTTP 409."""
        handler = Recorder(httpx.Response(409, json={"message": "Version must be incremented"}))

        async with make_client(handler) as client:
            with pytest.raises(VersionConflictError) as exc_info:
                await client.update_page("123", "Root", "<p/>", 4)

        assert exc_info.value.expected_version == 4

    @pytest.mark.asyncio
    async def test_default_parent_is_space_homepage(self):
        """default_parent_id should resolve the space homepage."""
        handler = Recorder(httpx.Response(200, json={"key": "DOCS", "homepage": {"id": 77}}))

        async with make_client(handler) as client:
            assert await client.default_parent_id("DOCS") == "77"

        assert handler.requests[0].url.path == "/rest/api/space/DOCS"


class TestErrorHandling:
    """Test cases for HTTP error translation and retries."""

    @pytest.mark.asyncio
    async def test_unauthorized_raises_authentication_error(self):
        """A 401 response should raise AuthenticationError."""
        handler = Recorder(httpx.Response(401, json={"message": "Unauthorized"}))

        async with make_client(handler) as client:
            with pytest.raises(AuthenticationError) as exc_info:
                await client.find_page_by_title("DOCS", "Root")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_not_found_raises_resource_not_found(self):
        """A 404 response should raise ResourceNotFoundError."""
        handler = Recorder(httpx.Response(404, json={"message": "No space"}))

        async with make_client(handler) as client:
            with pytest.raises(ResourceNotFoundError):
                await client.default_parent_id("NOPE")

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        """A 503 followed by success should be retried transparently."""
        handler = Recorder(
            httpx.Response(503),
            httpx.Response(200, json={"results": [page_payload()]}),
        )

        async with make_client(handler) as client:
            page = await client.find_page_by_title("DOCS", "Root")

        assert page.id == "123"
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_persistent_transient_errors_raise_transport_error(self):
        """Retries should stop after request_attempts."""
        handler = Recorder(httpx.Response(502), httpx.Response(502), httpx.Response(502))

        async with make_client(handler) as client:
            with pytest.raises(TransportError):
                await client.find_page_by_title("DOCS", "Root")

        assert len(handler.requests) == 3


class TestAttachments:
    """Test cases for attachment listing and upload."""

    @pytest.mark.asyncio
    async def test_list_follows_pagination(self):
        """list_attachments should follow _links.next."""
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "results": [{"id": "a1", "title": "app.js", "extensions": {"fileSize": 10}}],
                    "_links": {"next": "/rest/api/content/123/child/attachment?start=1&limit=1"},
                },
            ),
            httpx.Response(200, json={"results": [{"id": "a2", "title": "style.css"}], "_links": {}}),
        )

        async with make_client(handler) as client:
            attachments = await client.list_attachments("123")

        assert [item.filename for item in attachments] == ["app.js", "style.css"]
        assert attachments[0].file_size == 10
        assert handler.requests[1].url.params["start"] == "1"

    @pytest.mark.asyncio
    async def test_upload_replaces_existing_attachment(self):
        """upload_attachment should delete a same-named attachment before uploading."""
        handler = Recorder(
            httpx.Response(200, json={"results": [{"id": "old", "title": "app.js"}]}),
            httpx.Response(204),
            httpx.Response(200, json={"results": [{"id": "new", "title": "app.js"}]}),
        )

        async with make_client(handler) as client:
            attachment = await client.upload_attachment("123", "app.js", b"console.log(1)")

        methods = [(request.method, request.url.path) for request in handler.requests]
        assert methods == [
            ("GET", "/rest/api/content/123/child/attachment"),
            ("DELETE", "/rest/api/content/old"),
            ("POST", "/rest/api/content/123/child/attachment"),
        ]
        upload = handler.requests[2]
        assert upload.headers["Content-Type"].startswith("multipart/form-data")
        assert b"console.log(1)" in upload.content
        assert attachment.id == "new"
        assert attachment.download_path == "/download/attachments/123/app.js"


class TestResponseParsing:
    """Test cases for responses Confluence answers with unexpected bodies."""

    @pytest.mark.asyncio
    async def test_non_json_success_raises_api_error(self):
        """A 200 response that is not JSON should become a ConfluenceApiError."""
        handler = Recorder(httpx.Response(200, text="<html>Login required</html>"))

        async with make_client(handler) as client:
            with pytest.raises(ConfluenceApiError, match="non-JSON response") as exc_info:
                await client.find_page_by_title("DOCS", "Root")

        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_malformed_xhtml_is_parsed_into_issues(self):
        """create_page should expose Confluence's XHTML diagnostics on BadRequestError."""
        message = (
            "Error parsing xhtml: Unexpected close tag </p>; expected </div>.\n"
            " at [row,col {unknown-source}]: [3,14]"
        )
        handler = Recorder(httpx.Response(400, json={"statusCode": 400, "message": message}))

        async with make_client(handler) as client:
            with pytest.raises(BadRequestError) as exc_info:
                await client.create_page("DOCS", "Root", "<div><p></div>")

        issues = exc_info.value.xhtml_errors
        assert len(issues) == 1
        assert issues[0].tag_name == "p"
        assert (issues[0].line, issues[0].column) == (3, 14)
        assert issues[0].location == "Line 3, Column 14 - Tag <p>"

    @pytest.mark.asyncio
    async def test_other_bad_requests_carry_no_xhtml_issues(self):
        """A 400 unrelated to content should leave xhtml_errors empty."""
        handler = Recorder(httpx.Response(400, json={"message": "Space key is required"}))

        async with make_client(handler) as client:
            with pytest.raises(BadRequestError) as exc_info:
                await client.create_page("DOCS", "Root", "<p/>")

        assert exc_info.value.xhtml_errors == []

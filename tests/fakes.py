"""In-memory stand-ins for the Notion API used across tests."""

import httpx

from notion_sync.assets import AssetFetcher


def paragraph(block_id: str, text: str, has_children: bool = False) -> dict:
    return {
        "object": "block",
        "id": block_id,
        "type": "paragraph",
        "has_children": has_children,
        "paragraph": {
            "rich_text": [{"type": "text", "text": {"content": text}, "plain_text": text}],
        },
    }


def text_block(block_id: str, block_type: str, text: str, has_children: bool = False) -> dict:
    return {
        "object": "block",
        "id": block_id,
        "type": block_type,
        "has_children": has_children,
        block_type: {
            "rich_text": [{"type": "text", "text": {"content": text}, "plain_text": text}],
        },
    }


def image_block(block_id: str, url: str, file_type: str = "file") -> dict:
    return {
        "object": "block",
        "id": block_id,
        "type": "image",
        "has_children": False,
        "image": {"type": file_type, file_type: {"url": url}, "caption": []},
    }


def page(page_id: str, edited: str, title: str = "Page", **properties) -> dict:
    props = {"Name": {"id": "title", "type": "title",
                      "title": [{"type": "text", "plain_text": title, "text": {"content": title}}]}}
    props.update(properties)
    return {
        "object": "page",
        "id": page_id,
        "last_edited_time": edited,
        "properties": props,
        "cover": None,
        "icon": None,
        "url": f"https://www.notion.so/{page_id.replace('-', '')}",
        "public_url": None,
        "archived": False,
        "in_trash": False,
    }


class FakeNotionClient:
    """Serves canned blocks and pages; records what was asked for."""

    def __init__(self, pages=None, children=None):
        self.pages = list(pages or [])
        self.children = dict(children or {})
        self.children_calls: list[str] = []
        self.query_calls = 0
        self.query_error: Exception | None = None
        self.query_error_after = 0
        self.children_errors: dict[str, list[Exception]] = {}
        self.database = {"title": [{"plain_text": "Blog"}], "properties": {}}

    async def list_children(self, block_id, page_size=100):
        self.children_calls.append(block_id)
        errors = self.children_errors.get(block_id)
        if errors:
            raise errors.pop(0)
        for block in self.children.get(block_id, []):
            yield block

    async def query_database(self, database_id, filter_obj=None, sorts=None, page_size=100, archived=None):
        self.query_calls += 1
        self.last_query = {"filter": filter_obj, "sorts": sorts}
        for i, p in enumerate(self.pages):
            if self.query_error is not None and i >= self.query_error_after:
                raise self.query_error
            yield p
        if self.query_error is not None:
            raise self.query_error

    async def retrieve_database(self, database_id):
        return self.database


class ImageServer:
    """httpx handler serving fixed bytes for any URL and counting requests."""

    def __init__(self, content: bytes = b"\x89PNG fake", status_code: int = 200):
        self.content = content
        self.status_code = status_code
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        return httpx.Response(self.status_code, content=self.content)


def make_fetcher(content_root, server=None, asset_dir="assets/images/notion", timeout=10.0):
    server = server or ImageServer()
    fetcher = AssetFetcher(content_root, asset_dir, timeout=timeout,
                           transport=httpx.MockTransport(server))
    return fetcher, server

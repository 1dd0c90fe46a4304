"""Helper functions for tests."""

from typing import TYPE_CHECKING

from mcp.types import BlobResourceContents, TextContent, TextResourceContents

if TYPE_CHECKING:
    from fastmcp.client.client import CallToolResult

BASE_URL = "https://mcp.example.com"
CALLBACK_URL = f"{BASE_URL}/oauth/callback"


def get_text_content(result: "CallToolResult") -> str:
    """Extract text content from a CallToolResult.

    Raises:
        AssertionError: If content is not TextContent
    """
    assert len(result.content) > 0, "Result has no content"
    content = result.content[0]
    assert isinstance(content, TextContent), f"Expected TextContent, got {type(content)}"
    return content.text


def get_resource_text(contents: TextResourceContents | BlobResourceContents) -> str:
    assert isinstance(contents, TextResourceContents), (
        f"Expected TextResourceContents, got {type(contents)}"
    )
    return contents.text

from typing import Literal

from pydantic import Field

from chat_toolkit.conversation.data_models.base import WireModel


class WebSearchCitation(WireModel):
    """A source the provider cited while answering. Only 'url' and 'title' are guaranteed."""

    type: Literal["url_citation"] = "url_citation"
    url: str
    title: str
    cited_text: str | None = Field(default=None, alias="cited_text")
    snippet: str | None = None
    description: str | None = None
    image: str | None = None
    favicon: str | None = None
    site_name: str | None = None
    published_date: str | None = None
    author: str | None = None

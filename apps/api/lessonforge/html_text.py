from __future__ import annotations

from bs4 import BeautifulSoup, Comment

HTML_PARSER = "html.parser"


def _soup(markup: str) -> BeautifulSoup:
    soup = BeautifulSoup(markup, HTML_PARSER)
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    return soup


def visible_text(markup: str) -> str:
    """Text a reader would see, with whitespace collapsed."""
    soup = _soup(markup)
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return " ".join(soup.get_text(" ").split())


def style_text(markup: str) -> str:
    """Lower-cased CSS from ``<style>`` blocks and inline ``style`` attributes."""
    soup = _soup(markup)
    blocks = [tag.get_text(" ") for tag in soup.find_all("style")]
    inline = [tag["style"] for tag in soup.find_all(style=True)]
    return "\n".join(blocks + inline).lower()

import html
import logging
import os
import re
import sys
import tempfile
from collections import namedtuple
from xml.etree import ElementTree as etree

import markdown
from markdown.extensions import Extension
from markdown.extensions.toc import stashedHTML2text
from markdown.treeprocessors import Treeprocessor, UnescapeTreeprocessor

logger = logging.getLogger(__name__)

DOC_DIR = os.path.dirname(os.path.abspath(__file__))
CHANGELOG_PATH = os.path.normpath(os.path.join(DOC_DIR, "..", "CHANGELOG.md"))
OUTPUT_PATH = os.path.join(DOC_DIR, "changelog.html")

header = """
<div class="changelog-container prose prose-lg max-w-none">
"""

footer = """
</div>
"""

# css: classes on the heading itself, wrapper: classes of an enclosing div
# (None for no wrapper), anchored: whether the heading gets an id.
HeadingRule = namedtuple("HeadingRule", ["css", "wrapper", "anchored"])

HEADING_RULES = {
    1: HeadingRule("text-4xl font-bold text-gray-900 mb-8", None, False),
    2: HeadingRule("text-2xl font-semibold text-gray-900 mb-4", "mb-8", True),
    3: HeadingRule("text-xl font-medium text-gray-800 mt-6 mb-4", None, False),
}
MINOR_HEADING_RULE = HeadingRule("font-medium text-gray-800 mt-4 mb-2", None, False)

# Shared by <ul> and <ol>, list-disc included.
LIST_CLASS = "list-disc list-inside space-y-2 text-gray-600 mb-6 ml-4"
LIST_ITEM_CLASS = "text-base"

HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")
LIST_TAGS = ("ul", "ol")

_NON_WORD = re.compile(r"[^\w]+", re.ASCII)
_unescape = UnescapeTreeprocessor()


def heading_id(text):
    """Anchor id for a heading: lowercased, non-word runs become one hyphen."""
    return _NON_WORD.sub("-", text.lower())


def heading_rule(level):
    return HEADING_RULES.get(level, MINOR_HEADING_RULE)


def heading_text(heading, md):
    """Visible text of a heading, with the parser's placeholders resolved.

    Raw inline HTML and entities sit in the parser's HTML stash until
    serialization; tags are dropped and entities decoded, as are the ones
    code spans were escaped with.
    """
    text = "".join(heading.itertext())
    text = stashedHTML2text(text, md, strip_entities=False)
    return html.unescape(_unescape.unescape(text))


def render_heading(heading, parent, md):
    rule = heading_rule(int(heading.tag[1]))
    heading.set("class", rule.css)
    if rule.anchored:
        heading.set("id", heading_id(heading_text(heading, md)))
    if rule.wrapper:
        _wrap(heading, parent, rule.wrapper)


def render_list(element):
    # The tag (ul/ol) already reflects whether the list is ordered.
    element.set("class", LIST_CLASS)


def render_list_item(element):
    element.set("class", LIST_ITEM_CLASS)


def _wrap(element, parent, css):
    index = list(parent).index(element)
    wrapper = etree.Element("div", {"class": css})
    wrapper.tail, element.tail = element.tail, None
    parent.remove(element)
    wrapper.append(element)
    parent.insert(index, wrapper)


class ChangelogTreeprocessor(Treeprocessor):
    """Applies the changelog heading and list styling to the parsed tree.

    Runs after inline processing so heading text (emphasis, code spans) is
    final when ids are computed, and before prettify so inserted wrappers get
    the usual line breaks.
    """

    def run(self, root):
        parents = {child: parent for parent in root.iter() for child in parent}
        for element in list(root.iter()):
            if element.tag in HEADING_TAGS:
                render_heading(element, parents[element], self.md)
            elif element.tag in LIST_TAGS:
                render_list(element)
            elif element.tag == "li":
                render_list_item(element)


class ChangelogExtension(Extension):
    def extendMarkdown(self, md):
        md.treeprocessors.register(ChangelogTreeprocessor(md), "changelog", 15)


def make_parser():
    # One parser per document; nothing is registered globally.
    return markdown.Markdown(extensions=["fenced_code", "tables", ChangelogExtension()])


def convert(text):
    body = make_parser().convert(text)
    return header + body + footer


def write_fragment(target, fragment):
    """Replace `target` with `fragment` in one step.

    The text goes to a temporary file next to `target` first, so a failed
    write leaves the previous fragment in place.
    """
    fd, temp_path = tempfile.mkstemp(
        dir=os.path.dirname(os.path.abspath(target)), prefix=".changelog-", suffix=".html"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as output_file:
            output_file.write(fragment)
        # mkstemp creates the file as 0600
        os.chmod(temp_path, 0o644)
        os.replace(temp_path, target)
    except Exception:
        os.unlink(temp_path)
        raise


def make_changelog(source=CHANGELOG_PATH, target=OUTPUT_PATH):
    """Render the changelog at `source` into an HTML fragment at `target`.

    Any failure is logged and reported through the return value; `target`
    keeps its previous content on every failure.
    """
    try:
        with open(source, "r", encoding="utf-8") as input_file:
            fragment = convert(input_file.read())

        write_fragment(target, fragment)
    except Exception:
        logger.exception("Failed to generate changelog HTML from %s", source)
        return False

    logger.info("Changelog HTML written to %s", target)
    return True


def console_handlers():
    """Route INFO records to stdout and warnings and errors to stderr."""
    formatter = logging.Formatter("%(message)s")

    out = logging.StreamHandler(sys.stdout)
    out.setLevel(logging.INFO)
    out.addFilter(lambda record: record.levelno < logging.WARNING)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)

    for handler in (out, err):
        handler.setFormatter(formatter)
    return out, err


def main():
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    for handler in console_handlers():
        root.addHandler(handler)
    make_changelog(CHANGELOG_PATH, OUTPUT_PATH)


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
This script converts a list of HTML documents into an EPUB 3 file.
HTML is normalized into XHTML, images and stylesheets are extracted from
under a resource root and everything is packaged in the order mandated by
the EPUB Open Container Format.

Usage:
    python3 html2epub.py convert <source_directory> <output.epub>
    python3 html2epub.py init <new_directory>
    python3 html2epub.py help

Options:
    convert             Convert a directory of HTML files into an EPUB
    init                Create and fill a directory
    help                Display this help message

Settings:
    --gray-images         Convert all images to grayscale
    --optimize-images     Re-encode images and strip their metadata
    --jpeg-quality        Quality for JPEG images
    --workers             Number of documents normalized in parallel
    --verbose             Log every step of the conversion

Examples:
    python html2epub.py convert my_book/ my_book.epub
    python html2epub.py init new_book/
    python html2epub.py help
"""

from os import unlink, mkdir
from os.path import splitext, abspath, join, isfile
from sys import argv, exit as sys_exit
import sys
import logging
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import BytesIO
from json import load, dumps
from posixpath import basename as posix_basename, normpath
from re import sub
from typing import Callable, Iterable, List, Optional
from urllib.parse import urljoin, urlparse, unquote
from xml.dom.minidom import Document, Node, Element, getDOMImplementation
from zipfile import ZipFile, ZipInfo, ZIP_DEFLATED, ZIP_STORED

import html5lib
from html5lib.constants import E as PARSE_ERRORS
from markdown import markdown
from PIL import Image, ImageDraw

logger = logging.getLogger(__name__)

OPTIONS = {
    "convert": {
        "usage": "convert <source_directory> <output.epub>",
        "description": "Convert a directory of HTML files into an EPUB",
        "settings": {
            "gray-images": {
                "default": False,
                "description": "Convert all images to grayscale"
            },
            "optimize-images": {
                "default": False,
                "description": "Re-encode images and strip their metadata"
            },
            "jpeg-quality": {
                "default": "95",
                "description": "Quality for JPEG images"
            },
            "workers": {
                "default": "4",
                "description": "Number of documents normalized in parallel"
            },
            "verbose": {
                "default": False,
                "description": "Log every step of the conversion"
            }
        },
        "min_args": 2,
        "max_args": 2
    },
    "init": {
        "usage": "init <new_directory>",
        "description": "Create and fill a directory",
        "settings": {},
        "min_args": 1,
        "max_args": 1
    },
    "help": {
        "usage": "help",
        "description": "Display this help message",
        "settings": {},
        "min_args": 0,
        "max_args": 0
    },
}

DEFAULT_STYLES = r"""
img {
    max-width: 100%;
    height: auto;
}

table {
    border-collapse: collapse;
    width: 100%;
    font-size: 80%;
}

td, th {
    border: 2px solid #bbb;
    padding: 10px;
}

tr:nth-child(even) { background-color: #eee; }

blockquote {
    margin-left: 10%;
    font-style: italic;
}
"""

XHTML_NS = "http://www.w3.org/1999/xhtml"
OPS_NS = "http://www.idpf.org/2007/ops"
OPF_NS = "http://www.idpf.org/2007/opf"
DC_NS = "http://purl.org/dc/elements/1.1/"
CONTAINER_NS = "urn:oasis:names:tc:opendocument:xmlns:container"
XLINK_NS = "http://www.w3.org/1999/xlink"

# Prefixed attributes the HTML parser leaves undeclared
KNOWN_PREFIXES = {
    "epub": OPS_NS,
    "xlink": XLINK_NS,
}

EPUB_MIMETYPE = "application/epub+zip"
CONTAINER_PATH = "META-INF/container.xml"
PACKAGE_PATH = "EPUB/package.opf"
TOC_PATH = "EPUB/toc.xhtml"
CONTENT_DIRECTORY = "EPUB/"

# Manifest properties and the tag names revealing them
PROPERTY_TAGS = {
    "scripted": ("script", "form", "input", "select", "textarea", "button"),
    "mathml": ("math", "mml:math"),
    "svg": ("svg", "svg:svg"),
}

MIMETYPE_OVERRIDES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".css": "text/css",
}

PROCESSABLE_IMAGES = ("image/jpeg", "image/png", "image/gif")

CHUNK_SIZE = 64 * 1024

# Oldest timestamp a zip entry can carry
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

# Return codes
ERROR_NO_COMMAND = 1
ERROR_UNKNOWN_COMMAND = 2
ERROR_UNKNOWN_OPTION = 3
ERROR_ARGUMENT_COUNT = 4
ERROR_DIRECTORY_EXISTS = 5
ERROR_INVALID_DESCRIPTION = 6
ERROR_NORMALIZATION = 7
ERROR_SECURITY = 8
ERROR_RESOURCE = 9
ERROR_ARCHIVE = 10


class HTMLEPubError(Exception):
    """Base class of every error raised while building an EPUB."""


class NormalizationFailure(HTMLEPubError):
    """A document could not be turned into a usable XHTML tree."""

    def __init__(self, message: str, index: Optional[int] = None) -> None:
        self.index = index
        if index is not None:
            message = f"document {index}: {message}"
        super().__init__(message)


class SecurityViolation(HTMLEPubError):
    """A resource reference resolves outside the resource root."""

    def __init__(self, reference: str, source: str) -> None:
        self.reference = reference
        self.source = source
        super().__init__(
            f"Resource {reference!r} is outside the resource root ({source})"
        )


class ResourceReadFailure(HTMLEPubError):
    """A resource could not be opened or fully read."""

    def __init__(self, source: str, reason: str = "") -> None:
        self.source = source
        message = f"Could not read resource {source}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ArchiveWriteFailure(HTMLEPubError):
    """The output sink rejected a write."""


class InvalidDescription(HTMLEPubError):
    """Book metadata or description.json cannot be used."""


def fatal_error(message: str, exit_code: int) -> None:
    """Print an error message on stderr and exit the program."""
    print(f"ERROR: {message}", file=sys.stderr)
    sys_exit(exit_code)


def get_mimetype(resource_name: str) -> str:
    """Return the mimetype of a resource based on its name."""
    _, extension = splitext(resource_name)
    extension = extension.lower()

    if extension in MIMETYPE_OVERRIDES:
        return MIMETYPE_OVERRIDES[extension]

    mimetype, _ = mimetypes.guess_type(resource_name, strict=False)

    return mimetype or "application/octet-stream"


def create(tag: str, attributes: dict = None, content=None) -> Element:
    """Create an XML element with the given tag, attributes and content."""
    doc = Document()
    element = doc.createElement(tag)

    if attributes is not None:
        for key, value in attributes.items():
            element.setAttribute(key, value)

    if content:
        if isinstance(content, Element):
            element.appendChild(content)
        else:
            element.appendChild(doc.createTextNode(content))

    return element


def append_to(doc: Node, tag: str, attributes: dict = None, content=None) -> Element:
    """Create an XML element and append it to the document."""
    element = create(tag, attributes, content)
    doc.appendChild(element)
    return element


def text_content(node: Node) -> str:
    """Return the concatenated text of a node and its descendants."""
    if node.nodeType in (Node.TEXT_NODE, Node.CDATA_SECTION_NODE):
        return node.data

    return "".join(text_content(child) for child in node.childNodes)


def element_children(node: Node) -> List[Element]:
    """Return the direct element children of a node."""
    return [child for child in node.childNodes
            if child.nodeType == Node.ELEMENT_NODE]


def serialize(tree: Document) -> bytes:
    """Return the XHTML bytes of a normalized document tree."""
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        '<!DOCTYPE html>\n'
        + tree.documentElement.toxml()
        + "\n"
    ).encode("utf-8")


def parse_timestamp(value) -> datetime:
    """Return a timezone aware datetime from an ISO 8601 string or datetime."""
    if isinstance(value, datetime):
        timestamp = value
    else:
        try:
            timestamp = datetime.fromisoformat(sub(r"Z$", "+00:00", value))
        except (TypeError, ValueError) as error:
            raise InvalidDescription(
                f"Invalid timestamp {value!r}"
            ) from error

    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    return timestamp.astimezone(timezone.utc)


def format_timestamp(timestamp: datetime) -> str:
    """Format a timestamp as UTC without fractional seconds."""
    return timestamp.astimezone(timezone.utc).strftime(r"%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Contributor:
    """Someone who took part in making the book."""
    name: str


@dataclass(frozen=True)
class Book:
    """Metadata of the book being converted."""
    identifier: str
    title: str
    language: str = "en-US"
    updated: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    license_url: Optional[str] = None
    contributors: tuple = ()

    @classmethod
    def from_settings(cls, settings: dict) -> "Book":
        """Create a book from the metadata section of description.json."""
        for key in ("identifier", "title"):
            if not settings.get(key):
                raise InvalidDescription(f"Missing book {key}")

        contributors = []
        for contributor in settings.get("contributors") or []:
            if isinstance(contributor, str):
                contributors.append(Contributor(contributor))
            elif isinstance(contributor, dict) and contributor.get("name"):
                contributors.append(Contributor(contributor["name"]))
            else:
                raise InvalidDescription(
                    f"Invalid contributor {contributor!r}"
                )

        extra = {}
        if settings.get("updated"):
            extra["updated"] = parse_timestamp(settings["updated"])

        return cls(
            identifier=settings["identifier"],
            title=settings["title"],
            language=settings.get("language") or "en-US",
            license_url=settings.get("licenseURL") or None,
            contributors=tuple(contributors),
            **extra
        )


@dataclass
class Item:
    """One HTML document given to the converter."""
    content: bytes
    title: Optional[str] = None


@dataclass
class DocumentRecord:
    """A normalized document and its place in the package."""
    id: str
    tree: Document
    title: str
    target: str


@dataclass
class ResourceRecord:
    """An image or stylesheet extracted from a document."""
    id: str
    source: str
    mimetype: str
    target: str


class IdentifierAllocator:
    """
    Generate the identifiers of one conversion.

    Identifiers only depend on input order so that converting the same input
    twice gives the same package.
    """

    def __init__(self, start: int = 1) -> None:
        self.start = start

    def chapter(self, index: int) -> int:
        """Return the chapter number of the document at a given index."""
        return self.start + index

    def document(self, index: int) -> str:
        """Return the identifier of the document at a given index."""
        return f"chapter-{self.chapter(index)}"

    def resource(self, kind: str, chapter: int, index: int) -> str:
        """Return the identifier of the nth resource of a kind in a chapter."""
        return f"{kind}-{chapter}-{index}"


class Normalizer:
    """Turn raw HTML into a well-formed XHTML document tree."""

    def __init__(self, title: str) -> None:
        self.title = title

    def parse(self, content) -> Document:
        """Parse a document and set its title to the book title."""
        if not content or not content.strip():
            raise NormalizationFailure("The document is empty")

        parser = html5lib.HTMLParser(
            tree=html5lib.getTreeBuilder("dom"),
            namespaceHTMLElements=True
        )

        try:
            if isinstance(content, bytes):
                tree = parser.parse(content, default_encoding="utf-8")
            else:
                tree = parser.parse(content)
        except Exception as error:
            raise NormalizationFailure(
                f"The document failed to parse: {error}"
            ) from error

        if tree is None or tree.documentElement is None:
            raise NormalizationFailure("The document failed to parse")

        self.report(parser.errors)
        self.declare_namespaces(tree)
        self.set_title(tree)

        return tree

    @staticmethod
    def report(errors: list) -> None:
        """Log parser diagnostics as warnings."""
        for position, code, datavars in errors:
            try:
                message = PARSE_ERRORS.get(code, code) % datavars
            except (KeyError, TypeError, ValueError):
                message = code

            line, column = position if position else (0, 0)
            logger.warning("line %s column %s: %s", line, column, message)

    @staticmethod
    def declare_namespaces(tree: Document) -> None:
        """Add the namespace declarations the XHTML serialization needs."""
        root = tree.documentElement
        prefixes = set()
        pending = [(root, None)]

        while pending:
            element, parent_namespace = pending.pop()

            namespace = element.namespaceURI
            if namespace and namespace != parent_namespace:
                element.setAttribute("xmlns", namespace)

            for index in range(element.attributes.length):
                name = element.attributes.item(index).name
                if ":" in name:
                    prefixes.add(name.split(":", 1)[0])

            pending.extend(
                (child, namespace) for child in element_children(element)
            )

        for prefix in sorted(prefixes):
            if prefix in KNOWN_PREFIXES:
                root.setAttribute(f"xmlns:{prefix}", KNOWN_PREFIXES[prefix])
            elif prefix not in ("xml", "xmlns"):
                logger.warning("Undeclared attribute prefix %r", prefix)

    def set_title(self, tree: Document) -> None:
        """Replace the content of the title element by the book title."""
        head = tree.getElementsByTagName("head")[0]
        titles = head.getElementsByTagName("title")

        if titles:
            title = titles[0]
            while title.firstChild is not None:
                title.removeChild(title.firstChild)
        else:
            title = tree.createElementNS(XHTML_NS, "title")
            head.insertBefore(title, head.firstChild)

        title.appendChild(tree.createTextNode(self.title))


class ResourceResolver:
    """Extract images and stylesheets from document trees."""

    def __init__(self, resource_root: str,
                 allocator: IdentifierAllocator) -> None:
        # ensure trailing slash
        if not resource_root.endswith("/"):
            resource_root += "/"
        self.resource_root = resource_root
        self.allocator = allocator

    def resolve(self, reference: str) -> str:
        """Resolve a reference against the resource root."""
        # ensure no leading slash
        uri = sub(r"^/+", "", reference)
        source = urljoin(self.resource_root, uri)

        if not source.startswith(self.resource_root):
            raise SecurityViolation(reference, source)

        # the decoded path is what gets opened, check it too
        root_path = local_path(self.resource_root)
        source_path = local_path(source)
        if root_path is not None and source_path is not None:
            if not normpath(source_path).startswith(
                    normpath(root_path).rstrip("/") + "/"):
                raise SecurityViolation(reference, source_path)

        return source

    def extract(self, tree: Document, chapter: int) -> tuple:
        """
        Record every image and stylesheet of a document and rewrite their
        references to the location they will have in the package.

        Returns the list of images and the list of stylesheets.
        """
        images = []
        for element in tree.getElementsByTagName("img"):
            reference = element.getAttribute("src").strip()
            if not reference:
                continue

            source = self.resolve(reference)
            identifier = self.allocator.resource("image", chapter, len(images))
            path = urlparse(reference).path
            _, extension = splitext(path)
            target = f"images/{identifier}{extension}"

            images.append(ResourceRecord(
                identifier, source, get_mimetype(path), target
            ))
            element.setAttribute("src", "../" + target)

        styles = []
        for element in self.stylesheet_links(tree):
            reference = element.getAttribute("href").strip()
            if not reference:
                continue

            source = self.resolve(reference)
            identifier = self.allocator.resource("style", chapter, len(styles))
            target = f"styles/{identifier}.css"

            styles.append(ResourceRecord(
                identifier, source, "text/css", target
            ))
            element.setAttribute("href", "../" + target)

        logger.debug(
            "chapter %d: %d images, %d stylesheets",
            chapter, len(images), len(styles)
        )

        return images, styles

    @staticmethod
    def stylesheet_links(tree: Document) -> List[Element]:
        """Return the stylesheet links found directly under the head."""
        links = []
        for head in tree.getElementsByTagName("head"):
            for element in element_children(head):
                if element.tagName != "link":
                    continue

                rel = element.getAttribute("rel").lower().split()
                if "stylesheet" in rel:
                    links.append(element)

        return links


class HTMLEPub:
    """Class to generate an EPUB file from a list of HTML documents."""

    def __init__(self, book: Book, resource_root: str,
                 allocator: IdentifierAllocator = None,
                 workers: int = None) -> None:
        self.book = book
        self.resource_root = resource_root
        self.allocator = allocator or IdentifierAllocator()
        self.workers = workers
        self.normalizer = Normalizer(book.title)

        self.xhtml: List[DocumentRecord] = []
        self.images: List[ResourceRecord] = []
        self.styles: List[ResourceRecord] = []

    @property
    def resources(self) -> List[ResourceRecord]:
        """Return every extracted resource in archive order."""
        return self.images + self.styles

    def parse(self, content) -> Document:
        """Normalize one HTML document."""
        return self.normalizer.parse(content)

    def _parse_item(self, indexed_item: tuple) -> Document:
        index, item = indexed_item
        try:
            return self.parse(item.content)
        except NormalizationFailure as error:
            raise NormalizationFailure(str(error), index) from error

    def load(self, items: Iterable) -> None:
        """
        Normalize the documents and extract their resources.

        Documents are normalized in parallel but identifiers, spine and
        resources always follow input order. Nothing is kept if any document
        fails.
        """
        items = [as_item(item) for item in items]

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            trees = list(executor.map(self._parse_item, enumerate(items)))

        resolver = ResourceResolver(self.resource_root, self.allocator)
        xhtml, images, styles = [], [], []

        for index, (item, tree) in enumerate(zip(items, trees)):
            identifier = self.allocator.document(index)
            chapter = self.allocator.chapter(index)

            title = item.title or self.first_heading(tree)
            target = f"xhtml/{identifier}.xhtml"

            xhtml.append(DocumentRecord(identifier, tree, title, target))

            chapter_images, chapter_styles = resolver.extract(tree, chapter)
            images.extend(chapter_images)
            styles.extend(chapter_styles)

        self.xhtml, self.images, self.styles = xhtml, images, styles

        logger.info(
            "Loaded %d documents, %d images and %d stylesheets",
            len(xhtml), len(images), len(styles)
        )

    @staticmethod
    def first_heading(tree: Document) -> str:
        """Return the text of the first h1 element, if any."""
        headings = tree.getElementsByTagName("h1")
        if not headings:
            return ""

        return " ".join(text_content(headings[0]).split())

    @staticmethod
    def properties(tree: Document) -> List[str]:
        """Return the manifest properties a document requires."""
        # note: namespaces are not checked, tag names are enough
        return [
            name for name, tags in PROPERTY_TAGS.items()
            if any(tree.getElementsByTagName(tag) for tag in tags)
        ]

    def container_xml(self) -> bytes:
        """Return the XML data for the container.xml file."""
        doc = Document()
        container = append_to(doc, 'container', {
            'version': "1.0",
            'xmlns': CONTAINER_NS
        })

        rootfiles = append_to(container, 'rootfiles')
        append_to(rootfiles, 'rootfile', {
            'full-path': PACKAGE_PATH,
            'media-type': "application/oebps-package+xml"
        })

        return doc.toprettyxml(indent="  ", encoding="utf-8")

    def _create_package(self) -> Element:
        """Create the package element of the OPF file."""
        return create("package", {
            "xmlns": OPF_NS,
            "version": "3.0",
            "xml:lang": self.book.language,
            "unique-identifier": "uid",
            "prefix": "cc: http://creativecommons.org/ns#"
        })

    def _create_metadata(self) -> Element:
        """Create the metadata element of the OPF file."""
        book = self.book
        metadata = create('metadata', {'xmlns:dc': DC_NS})

        append_to(metadata, 'dc:identifier', {'id': "uid"}, book.identifier)
        append_to(metadata, 'dc:title', {'id': "title"}, book.title)
        append_to(metadata, 'dc:language', {}, book.language)

        for contributor in book.contributors:
            append_to(metadata, 'dc:contributor', {}, contributor.name)

        append_to(metadata, 'meta', {
            'property': "dcterms:modified"
        }, format_timestamp(book.updated))

        if book.license_url:
            append_to(metadata, 'link', {
                'rel': "cc:license",
                'href': book.license_url
            })

        return metadata

    def _create_manifest(self) -> Element:
        """Create the manifest element of the OPF file."""
        manifest = create('manifest')

        append_to(manifest, 'item', {
            'id': "toc",
            'href': posix_basename(TOC_PATH),
            'media-type': "application/xhtml+xml",
            'properties': "nav"
        })

        for document in self.xhtml:
            item = append_to(manifest, 'item', {
                'id': document.id,
                'href': document.target,
                'media-type': "application/xhtml+xml"
            })

            properties = self.properties(document.tree)
            if properties:
                item.setAttribute('properties', " ".join(properties))

        for resource in self.resources:
            append_to(manifest, 'item', {
                'id': resource.id,
                'href': resource.target,
                'media-type': resource.mimetype
            })

        return manifest

    def _create_spine(self) -> Element:
        """Create the spine element of the OPF file."""
        spine = create('spine')

        append_to(spine, 'itemref', {'idref': "toc"})

        for document in self.xhtml:
            append_to(spine, 'itemref', {'idref': document.id})

        return spine

    def package_opf_xml(self) -> bytes:
        """Return the XML data for the package.opf file."""
        opf = Document()

        package = self._create_package()

        package.appendChild(self._create_metadata())
        package.appendChild(self._create_manifest())
        package.appendChild(self._create_spine())

        opf.appendChild(package)

        return opf.toprettyxml(indent="  ", encoding="utf-8")

    def toc_xml(self) -> bytes:
        """Returns the XML data for the toc.xhtml file."""
        doc = Document()
        doc.appendChild(
            getDOMImplementation().createDocumentType("html", None, None)
        )

        html = append_to(doc, 'html', {
            'xmlns': XHTML_NS,
            'xmlns:epub': OPS_NS,
            'xml:lang': self.book.language
        })

        head = append_to(html, 'head')
        append_to(head, 'meta', {'charset': "utf-8"})
        append_to(head, 'title', {}, self.book.title)

        body = append_to(html, 'body')
        header = append_to(body, 'header')
        append_to(header, 'h1', {}, "Contents")

        nav = append_to(body, 'nav', {'epub:type': "toc", 'id': "toc"})
        nav_list = append_to(nav, 'ol')

        for document in self.xhtml:
            nav_item = append_to(nav_list, 'li')
            append_to(nav_item, 'a', {'href': document.target}, document.title)

        return doc.toprettyxml(indent="  ", encoding="utf-8")

    def _zipinfo(self, filename: str, compress_type: int) -> ZipInfo:
        """Return the entry header of a file, dated from the book update."""
        updated = self.book.updated.astimezone(timezone.utc).timetuple()[:6]
        zinfo = ZipInfo(filename, date_time=max(updated, ZIP_EPOCH))
        zinfo.compress_type = compress_type
        if compress_type == ZIP_DEFLATED:
            zinfo._compresslevel = 9
        zinfo.external_attr = 0o644 << 16
        return zinfo

    def epub_put(self, epub: ZipFile, filename: str, data) -> None:
        """Write a file to the EPUB archive."""
        try:
            if filename == "mimetype":
                epub.writestr(self._zipinfo(filename, ZIP_STORED), data)
            else:
                epub.writestr(
                    self._zipinfo(filename, ZIP_DEFLATED), data,
                    compresslevel=9
                )
        except OSError as error:
            raise ArchiveWriteFailure(
                f"Could not write {filename}: {error}"
            ) from error

    def epub_copy(self, epub: ZipFile, filename: str, source: str) -> None:
        """Stream a resource into the EPUB archive, one chunk at a time."""
        resource = open_resource(source)
        try:
            with epub.open(self._zipinfo(filename, ZIP_DEFLATED), "w") as entry:
                while True:
                    try:
                        chunk = resource.read(CHUNK_SIZE)
                    except OSError as error:
                        raise ResourceReadFailure(source, str(error)) from error

                    if not chunk:
                        break

                    try:
                        entry.write(chunk)
                    except OSError as error:
                        raise ArchiveWriteFailure(
                            f"Could not write {filename}: {error}"
                        ) from error
        finally:
            resource.close()

    def check_resources(self) -> None:
        """Make sure every resource can be opened before writing anything."""
        sources = [resource.source for resource in self.resources]
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            list(executor.map(check_resource, sources))

    def stream(self, output, image_options: dict = None) -> List[str]:
        """
        Write the EPUB archive to a binary output stream.

        The central directory is only written once every entry has been
        appended: a failure leaves an unfinished archive in the output that
        the caller must discard.

        Returns the names of the entries in archive order.
        """
        self.check_resources()

        try:
            epub = ZipFile(output, "w", ZIP_DEFLATED, compresslevel=9)
        except OSError as error:
            raise ArchiveWriteFailure(str(error)) from error

        names = []

        def put(filename: str, data) -> None:
            self.epub_put(epub, filename, data)
            names.append(filename)

        try:
            # mimetype - mandatory, first file of the archive, not compressed
            put("mimetype", EPUB_MIMETYPE)

            # META-INF/container.xml - mandatory, points to EPUB/package.opf
            put(CONTAINER_PATH, self.container_xml())

            # EPUB/package.opf - describes the package contents
            put(PACKAGE_PATH, self.package_opf_xml())

            # EPUB/toc.xhtml - table of contents
            put(TOC_PATH, self.toc_xml())

            # EPUB/xhtml/*.xhtml - the chapters
            for document in self.xhtml:
                put(CONTENT_DIRECTORY + document.target,
                    serialize(document.tree))

            # EPUB/images/* then EPUB/styles/* - the resources
            process = image_processor(image_options)
            for resource in self.resources:
                filename = CONTENT_DIRECTORY + resource.target

                if process and resource.mimetype in PROCESSABLE_IMAGES:
                    data = read_resource(resource.source)
                    try:
                        data = process(data)
                    except (OSError, ValueError) as error:
                        raise ResourceReadFailure(
                            resource.source, f"cannot process image: {error}"
                        ) from error

                    put(filename, data)
                    continue

                self.epub_copy(epub, filename, resource.source)
                names.append(filename)
        except BaseException:
            # detach the sink so the central directory is never written
            epub.fp = None
            raise

        try:
            epub.close()
        except OSError as error:
            raise ArchiveWriteFailure(str(error)) from error

        logger.info("Wrote %d entries", len(names))

        return names

    def write(self, epub_path: str, image_options: dict = None) -> List[str]:
        """Create the EPUB file, removing it if anything goes wrong."""
        try:
            output = open(epub_path, "wb")
        except OSError as error:
            raise ArchiveWriteFailure(
                f"Cannot create {epub_path}: {error}"
            ) from error

        try:
            with output:
                return self.stream(output, image_options)
        except BaseException:
            if isfile(epub_path):
                unlink(epub_path)
            raise


def as_item(item) -> Item:
    """Accept an Item or a mapping with content and optional title."""
    if isinstance(item, Item):
        return item

    return Item(item["content"], item.get("title"))


def local_path(source: str) -> Optional[str]:
    """Return the local path of a resource location, None if not local."""
    location = urlparse(source)

    if location.scheme == "file":
        return unquote(location.path)

    if location.scheme and len(location.scheme) > 1:
        return None

    return source


def resource_path(source: str) -> str:
    """Return the local path of a resource, failing if it is not local."""
    path = local_path(source)

    if path is None:
        raise ResourceReadFailure(source, "not a local resource")

    return path


def open_resource(source: str):
    """Open a resource for binary reading."""
    try:
        return open(resource_path(source), "rb")
    except OSError as error:
        raise ResourceReadFailure(source, str(error)) from error


def check_resource(source: str) -> None:
    """Raise ResourceReadFailure if a resource cannot be opened."""
    open_resource(source).close()


def read_resource(source: str) -> bytes:
    """Return the whole content of a resource."""
    with open_resource(source) as resource:
        try:
            return resource.read()
        except OSError as error:
            raise ResourceReadFailure(source, str(error)) from error


def process_image(data: bytes, options: dict) -> bytes:
    """Re-encode an image without its metadata and return its binary data."""
    image = Image.open(BytesIO(data))
    img_format = image.format

    # Remove EXIF data
    clean = Image.frombytes(image.mode, image.size, image.tobytes())
    if image.mode == "P":
        clean.putpalette(image.getpalette())
    image = clean

    if options.get("gray-images"):
        image = image.convert("L")

    output = BytesIO()
    if img_format == "JPEG":
        quality = int(options.get("jpeg-quality", 95))
        image.save(output, img_format, quality=quality, optimize=True)
        return output.getvalue()

    image.save(output, img_format, optimize=True)
    return output.getvalue()


def image_processor(options: Optional[dict]) -> Optional[Callable]:
    """Return the image processing function the options ask for, if any."""
    if not options:
        return None

    if not (options.get("gray-images") or options.get("optimize-images")):
        return None

    return lambda data: process_image(data, options)


def markdown_to_html(markdown_data: str) -> str:
    """Render a markdown chapter as a complete HTML document."""
    html_text = markdown(
        markdown_data,
        extensions=["codehilite", "tables", "fenced_code"],
        extension_configs={"codehilite": {"guess_lang": False}},
        output_format="xhtml"
    )

    return (
        '<!DOCTYPE html>\n'
        '<html><head><meta charset="utf-8"/></head>'
        f'<body>{html_text}</body></html>'
    )


def read_description(source_directory: str) -> dict:
    """Load and check the description.json file of a source directory."""
    description_path = join(source_directory, "description.json")

    try:
        with open(description_path, "rb") as json_file:
            description = load(json_file)
    except (OSError, ValueError) as error:
        raise InvalidDescription(
            f"Cannot read {description_path}: {error}"
        ) from error

    if not isinstance(description.get("metadata"), dict):
        raise InvalidDescription("description.json has no metadata")

    chapters = description.get("chapters")
    if not chapters:
        raise InvalidDescription("description.json has no chapters")

    for chapter in chapters:
        if "html" not in chapter and "markdown" not in chapter:
            raise InvalidDescription(
                f"Chapter {chapter!r} has neither html nor markdown"
            )

    return description


def load_chapters(source_directory: str, chapters: list) -> List[Item]:
    """Read the chapters listed in description.json."""
    items = []

    for chapter in chapters:
        if "html" in chapter:
            path = join(source_directory, chapter["html"])
            with open(path, "rb") as chapter_file:
                content = chapter_file.read()
        else:
            path = join(source_directory, chapter["markdown"])
            with open(path, "r", encoding="utf-8") as chapter_file:
                content = markdown_to_html(chapter_file.read()).encode("utf-8")

        items.append(Item(content, chapter.get("title")))

    return items


def convert(source_directory: str, output_epub: str, options: dict) -> None:
    """Convert the book described in a source directory into an EPUB."""
    source_directory = abspath(source_directory)
    description = read_description(source_directory)

    book = Book.from_settings(description["metadata"])
    resource_root = abspath(
        join(source_directory, description.get("resource_root", "."))
    )

    try:
        items = load_chapters(source_directory, description["chapters"])
    except OSError as error:
        raise InvalidDescription(f"Cannot read chapter: {error}") from error

    try:
        workers = int(options.get("workers", 4))
    except ValueError:
        workers = 0

    if workers < 1:
        raise InvalidDescription(
            f"Invalid workers count {options.get('workers')!r}"
        )

    epub_generator = HTMLEPub(book, resource_root, workers=workers)
    epub_generator.load(items)
    epub_generator.write(output_epub, options)


def create_template(template_directory: str) -> None:
    """Create a template directory with a description.json file."""
    # Create the template directory.
    try:
        mkdir(template_directory)
    except FileExistsError:
        fatal_error(
            f"{template_directory} already exists",
            ERROR_DIRECTORY_EXISTS
        )

    # Fill images directory.
    images_directory = join(template_directory, "images")
    mkdir(images_directory)

    figure = Image.new(mode="RGB", size=(800, 400), color="blue")
    draw = ImageDraw.Draw(figure)
    draw.rectangle([(0, 160), (800, 240)], fill="yellow")
    figure.save(join(images_directory, "figure.png"))

    # Fill styles directory.
    styles_directory = join(template_directory, "styles")
    mkdir(styles_directory)

    with open(join(styles_directory, "book.css"), "wb") as book_css:
        book_css.write(DEFAULT_STYLES.encode("utf-8"))

    # Create the description.json file.
    description = {
        "metadata": {
            "identifier": "urn:uuid:00000000-0000-0000-0000-000000000000",
            "title": "The name of this document",
            "language": "en-US",
            "updated": datetime.now(timezone.utc).strftime(
                r"%Y-%m-%dT%H:%M:%SZ"
            ),
            "licenseURL": "",
            "contributors": [
                {"name": "Who has made contributions to this document?"}
            ]
        },
        "resource_root": ".",
        "chapters": [
            {
                "html": "chapter1.html"
            },
            {
                "markdown": "chapter2.md",
                "title": "Chapter 2"
            }
        ]
    }

    description_name = join(template_directory, "description.json")
    with open(description_name, "wb") as description_file:
        description_file.write(
            dumps(description, indent=4).encode("utf-8")
        )

    # Create the chapter1.html file.
    with open(join(template_directory, "chapter1.html"), "wb") as chap1:
        chap1.write((
            '<!DOCTYPE html>\n<html><head>'
            '<link rel="stylesheet" href="styles/book.css">'
            '</head><body><h1>Chapter 1</h1>'
            '<p>This is the first chapter.</p>'
            '<p><img src="images/figure.png" alt="A figure"></p>'
            '</body></html>\n'
        ).encode("utf-8"))

    # Create the chapter2.md file.
    with open(join(template_directory, "chapter2.md"), "wb") as chap2:
        chap2.write(
            '# Chapter 2\n\nThis is the second chapter.'.encode("utf-8")
        )


def print_usage():
    """Print the usage message."""
    print("\nUsage: html2epub.py <command> [options] [arguments]")

    print("\nCommands:")
    for command, infos in OPTIONS.items():
        print(f"    {command}:")
        print(f"        usage: {infos['usage']}")
        print(f"        description: {infos['description']}")

        if len(infos['settings']) > 0:
            print("        settings:")
            for setting, settings in infos['settings'].items():
                print(f"            --{setting} - {settings['description']}"
                      f" (default: {settings['default']})")

        print()


def parse_command_line(arguments: list[str]) -> dict:
    """
    Parse the command line and return a dictionary with the command and its
    options and arguments.
    """
    command_line = {
        'command': None,
        'options': {},
        'arguments': []
    }

    end_of_options = False
    for argument in arguments:
        if not end_of_options:
            if argument == '--':
                end_of_options = True
                continue

            if argument.startswith("--"):
                parts = argument[2:].split("=", 1)
                key = parts[0]
                if len(parts) == 1:
                    value = True
                else:
                    value = parts[1]

                command_line['options'][key] = value
                continue

        if command_line['command'] is None:
            command_line['command'] = argument

            if argument in OPTIONS:
                for option in OPTIONS[argument]['settings']:
                    default = OPTIONS[argument]['settings'][option]['default']
                    command_line['options'].setdefault(option, default)

            continue

        command_line['arguments'].append(argument)

    return command_line


def check_command_line(command_line: dict) -> None:
    """Check if the command line is valid."""
    if command_line['command'] is None:
        print_usage()
        fatal_error("No command provided", ERROR_NO_COMMAND)

    command = command_line['command']
    if command not in OPTIONS:
        fatal_error(f"Unknown command '{command}'", ERROR_UNKNOWN_COMMAND)

    options = command_line['options']
    for option in options:
        if option not in OPTIONS[command]['settings']:
            fatal_error(
                f"Unknown option {option} for command {command}",
                ERROR_UNKNOWN_OPTION
            )

    min_args = OPTIONS[command]['min_args']
    max_args = OPTIONS[command]['max_args']
    arg_count = len(command_line['arguments'])
    if not min_args <= arg_count <= max_args:
        if min_args == max_args:
            fatal_error(
                f"Invalid arguments count, got {arg_count}"
                f" but expected {min_args}"
                f" for command {command}",
                ERROR_ARGUMENT_COUNT
            )
        else:
            fatal_error(
                f"Invalid arguments count, got {arg_count}"
                f" but expected between {min_args} and {max_args})"
                f" for command {command}",
                ERROR_ARGUMENT_COUNT
            )


# Exit code of each conversion error
ERROR_CODES = (
    (InvalidDescription, ERROR_INVALID_DESCRIPTION),
    (NormalizationFailure, ERROR_NORMALIZATION),
    (SecurityViolation, ERROR_SECURITY),
    (ResourceReadFailure, ERROR_RESOURCE),
    (ArchiveWriteFailure, ERROR_ARCHIVE),
)


def main(arguments: list[str]):
    """Main function of the script."""
    command = parse_command_line(arguments)
    check_command_line(command)

    if command['command'] == "convert":
        source_directory = command['arguments'][0]
        output_epub = command['arguments'][1]
        options = command['options']

        logging.basicConfig(
            level=logging.DEBUG if options['verbose'] else logging.INFO,
            format="%(levelname)s: %(message)s"
        )

        try:
            convert(source_directory, output_epub, options)
        except HTMLEPubError as error:
            for error_class, exit_code in ERROR_CODES:
                if isinstance(error, error_class):
                    fatal_error(str(error), exit_code)
            raise

        print("SUCCESS: eBook creation complete")

    if command['command'] == "help":
        print_usage()

    if command['command'] == "init":
        template_directory = command['arguments'][0]
        create_template(template_directory)
        print(f"SUCCESS: {template_directory} template created")


def run():
    """Entry point of the html2epub command."""
    main(argv[1:])


if __name__ == "__main__":
    run()

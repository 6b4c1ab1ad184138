from __future__ import annotations

import json

import pytest

from shelfwise.catalog.errors import FeedParseError
from shelfwise.catalog.models import Collection, feed_to_dict
from shelfwise.catalog.opds1 import parse_opds1
from shelfwise.catalog.publication import get_available_publication_types

BASE_URL = "http://example.com/catalog/"


def test_entries_sharing_an_id_merge_collections_without_duplicates() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <id>catalog</id>
      <title>Lanes</title>
      <entry>
        <id>urn:book:1</id>
        <title>Sample Book</title>
        <link rel="http://opds-spec.org/acquisition" href="books/1.epub" type="application/epub+zip"/>
        <link rel="collection" href="/lanes/fiction" title="Fiction"/>
        <link rel="collection" href="/lanes/new" title="New Arrivals"/>
      </entry>
      <entry>
        <id>urn:book:1</id>
        <title>Sample Book (again)</title>
        <link rel="http://opds-spec.org/acquisition" href="books/1.epub" type="application/epub+zip"/>
        <link rel="collection" href="/lanes/new" title="New Arrivals"/>
        <link rel="collection" href="/lanes/classics" title="Classics"/>
      </entry>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    assert len(feed.books) == 1
    book = feed.books[0]
    assert book.title == "Sample Book"
    assert book.collections == [
        Collection(title="Fiction", href="http://example.com/lanes/fiction"),
        Collection(title="New Arrivals", href="http://example.com/lanes/new"),
        Collection(title="Classics", href="http://example.com/lanes/classics"),
    ]


def test_navigation_kind_entry_becomes_a_navigation_link() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <id>root</id>
      <title>Root</title>
      <entry>
        <id>nav-1</id>
        <title>By Author</title>
        <link href="/authors" type="application/atom+xml;kind=navigation"/>
      </entry>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    assert feed.books == []
    assert len(feed.nav_links) == 1
    link = feed.nav_links[0]
    assert link.title == "By Author"
    assert link.url == "http://example.com/authors"
    assert link.rel == "navigation"
    assert link.source == "navigation"


def test_acquisition_kind_feed_link_is_navigation_not_a_book() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <entry>
        <id>all-books</id>
        <title>All Books</title>
        <link rel="subsection" href="/all" type="application/atom+xml;profile=opds-catalog;kind=acquisition"/>
      </entry>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    assert feed.books == []
    assert [(link.title, link.rel) for link in feed.nav_links] == [("All Books", "acquisition")]


def test_distributor_collection_is_kept_but_not_navigable() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom"
          xmlns:opds="http://opds-spec.org/2010/catalog"
          xmlns:bibframe="http://id.loc.gov/ontologies/bibframe/">
      <entry>
        <id>urn:book:2</id>
        <title>Borrowable</title>
        <link rel="http://opds-spec.org/acquisition/borrow" href="/borrow/2"
              type="application/atom+xml;type=entry;profile=opds-catalog">
          <opds:indirectAcquisition type="application/vnd.adobe.adept+xml">
            <opds:indirectAcquisition type="application/epub+zip"/>
          </opds:indirectAcquisition>
          <opds:availability status="available"/>
        </link>
        <bibframe:distribution bibframe:ProviderName="Overdrive"/>
        <link rel="collection" href="/collections/overdrive" title="Overdrive"/>
        <link rel="collection" href="/collections/mystery" title="Mystery"/>
      </entry>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    book = feed.books[0]
    assert book.distributor == "Overdrive"
    assert book.availability_status == "available"
    assert [collection.title for collection in book.collections] == ["Overdrive", "Mystery"]
    nav_urls = [link.url for link in feed.nav_links]
    assert "http://example.com/collections/mystery" in nav_urls
    assert "http://example.com/collections/overdrive" not in nav_urls

    assert book.format == "EPUB"
    assert book.acquisition_media_type == "application/epub+zip"
    assert book.acquisition_chain == ["application/vnd.adobe.adept+xml", "application/epub+zip"]
    assert book.download_url == "http://example.com/borrow/2"


def test_feed_level_start_up_and_search_links() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom">
      <id>page-2</id>
      <title>Fiction</title>
      <link rel="start" href="/catalog" type="application/atom+xml;profile=opds-catalog"/>
      <link rel="up" href="/catalog/lanes" title="All Lanes"/>
      <link rel="search" href="/opensearch.xml" type="application/opensearchdescription+xml" title="Search"/>
      <link rel="next" href="?page=3"/>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    assert [(link.rel, link.title) for link in feed.nav_links] == [("start", "Home"), ("up", "All Lanes")]
    assert feed.search is not None
    assert feed.search.kind == "opensearch"
    assert feed.search.description_url == "http://example.com/opensearch.xml"
    assert all(link.rel != "search" for link in feed.nav_links)
    assert feed.pagination.next == "http://example.com/catalog/?page=3"
    assert feed.title == "Fiction"


def test_up_link_without_title_gets_a_default() -> None:
    xml_payload = """<feed xmlns="http://www.w3.org/2005/Atom">
      <link rel="up" href="/catalog"/>
    </feed>"""

    feed = parse_opds1(xml_payload, BASE_URL)

    assert feed.nav_links[0].title == "Up"


def test_authors_cover_and_metadata() -> None:
    xml_payload = """<?xml version="1.0" encoding="UTF-8"?>
    <feed xmlns="http://www.w3.org/2005/Atom"
          xmlns:dc="http://purl.org/dc/terms/"
          xmlns:schema="http://schema.org/">
      <entry schema:additionalType="http://bib.schema.org/Audiobook">
        <id>urn:book:3</id>
        <title>Spoken Word</title>
        <author><name>First Author</name></author>
        <author><name>Second Author</name></author>
        <author><name>Third Author</name></author>
        <summary type="html">&lt;p&gt;A &lt;b&gt;great&lt;/b&gt; listen&lt;/p&gt;</summary>
        <dc:publisher>Example Press</dc:publisher>
        <dc:issued>2021-04-01</dc:issued>
        <dc:identifier>urn:isbn:9780000000001</dc:identifier>
        <category term="Fiction" label="Fiction" scheme="http://example.com/genres"/>
        <link rel="thumbnail" href="covers/3-thumb.jpg" type="image/jpeg"/>
        <link rel="http://opds-spec.org/image" href="covers/3.jpg" type="image/jpeg"/>
        <link rel="http://opds-spec.org/acquisition/open-access" href="audio/3.json"
              type="application/audiobook+json"/>
      </entry>
    </feed>
    """

    feed = parse_opds1(xml_payload, BASE_URL)

    book = feed.books[0]
    assert book.author == "First Author"
    assert book.contributors == ["Second Author", "Third Author"]
    assert book.cover_image == "http://example.com/catalog/covers/3-thumb.jpg"
    assert book.summary == "A great listen"
    assert book.publisher == "Example Press"
    assert book.publication_date == "2021-04-01"
    assert book.provider_id == "urn:isbn:9780000000001"
    assert book.identifier == "urn:book:3"
    assert book.is_open_access is True
    assert book.format == "AUDIOBOOK"
    assert book.schema_org_type == "http://bib.schema.org/Audiobook"
    assert book.publication_type_label == "Audiobook"
    assert book.subjects == ["Fiction"]


def test_open_access_link_preferred_over_borrow() -> None:
    xml_payload = """<feed xmlns="http://www.w3.org/2005/Atom">
      <entry>
        <id>urn:book:4</id>
        <title>Public Domain</title>
        <link rel="http://opds-spec.org/acquisition/borrow" href="/borrow/4" type="application/pdf"/>
        <link rel="http://opds-spec.org/acquisition/open-access" href="/free/4.epub" type="application/epub+zip"/>
      </entry>
    </feed>"""

    book = parse_opds1(xml_payload, BASE_URL).books[0]

    assert book.download_url == "http://example.com/free/4.epub"
    assert book.is_open_access is True
    assert [item.url for item in book.alternative_formats] == ["http://example.com/borrow/4"]


def test_untitled_and_linkless_entries() -> None:
    xml_payload = """<feed xmlns="http://www.w3.org/2005/Atom">
      <entry><id>ghost</id></entry>
      <entry>
        <id>urn:book:5</id>
        <link rel="http://opds-spec.org/acquisition" href="/5.pdf" type="application/pdf"/>
      </entry>
    </feed>"""

    feed = parse_opds1(xml_payload, BASE_URL)

    assert [book.title for book in feed.books] == ["Untitled"]
    assert feed.books[0].format == "PDF"


def test_malformed_xml_raises_with_snippet() -> None:
    payload = "<feed><entry><title>Broken</entry>"

    with pytest.raises(FeedParseError) as excinfo:
        parse_opds1(payload, BASE_URL)

    assert excinfo.value.snippet.startswith("<feed><entry>")


def test_facet_links_are_grouped() -> None:
    xml_payload = """<feed xmlns="http://www.w3.org/2005/Atom"
          xmlns:opds="http://opds-spec.org/2010/catalog"
          xmlns:thr="http://purl.org/syndication/thread/1.0">
      <link rel="http://opds-spec.org/facet" href="?sort=new" title="Newest"
            opds:facetGroup="Sort" opds:activeFacet="true" thr:count="12"/>
      <link rel="http://opds-spec.org/facet" href="?sort=title" title="Title" opds:facetGroup="Sort"/>
      <link rel="http://opds-spec.org/facet" href="?lang=fr" title="French" opds:facetGroup="Language"/>
    </feed>"""

    feed = parse_opds1(xml_payload, BASE_URL)

    assert [group.title for group in feed.facet_groups] == ["Sort", "Language"]
    newest = feed.facet_groups[0].links[0]
    assert (newest.title, newest.active, newest.count) == ("Newest", True, 12)
    assert newest.url == "http://example.com/catalog/?sort=new"
    assert feed.facet_groups[0].links[1].active is False


def test_single_entry_document_is_parsed() -> None:
    xml_payload = """<entry xmlns="http://www.w3.org/2005/Atom">
      <id>urn:book:7</id>
      <title>Alone</title>
      <link rel="http://opds-spec.org/acquisition" href="/7.pdf" type="application/pdf"/>
    </entry>"""

    feed = parse_opds1(xml_payload, BASE_URL)

    assert [book.title for book in feed.books] == ["Alone"]
    assert feed.title is None


def test_normalized_output_is_stable_across_runs() -> None:
    xml_payload = """<feed xmlns="http://www.w3.org/2005/Atom" xmlns:schema="http://schema.org/">
      <entry schema:additionalType="http://schema.org/Book">
        <id>urn:book:6</id>
        <title>Stable</title>
        <link rel="http://opds-spec.org/acquisition" href="/6.epub" type="application/epub+zip"/>
        <link rel="collection" href="/c/1" title="One"/>
      </entry>
      <entry schema:additionalType="https://schema.org/ImageObject">
        <id>urn:book:8</id>
        <title>Plate</title>
        <link rel="http://opds-spec.org/acquisition" href="/8.pdf" type="application/pdf"/>
      </entry>
    </feed>"""

    def run() -> str:
        feed = parse_opds1(xml_payload, BASE_URL)
        payload = feed_to_dict(feed)
        payload["publicationTypes"] = get_available_publication_types(feed.books)
        return json.dumps(payload, sort_keys=True)

    first = run()

    assert first == run()
    assert json.loads(first)["publicationTypes"] == [
        {"key": "book", "label": "Book"},
        {"key": "image-object", "label": "Image Object"},
    ]

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Union
from urllib.parse import quote, urljoin

from .errors import FeedParseError, snippet_of

OPDS_ATOM_TYPE = "application/atom+xml;profile=opds-catalog"
OPDS_JSON_TYPE = "application/opds+json"

_TEMPLATE_RE = re.compile(r"\{([^}]+)\}")
_OPEN = "__OPENSEARCH_OPEN__"
_CLOSE = "__OPENSEARCH_CLOSE__"


class OpenSearchError(ValueError):
    """Raised when a search URL cannot be built from a template."""


@dataclass(frozen=True)
class TemplateParameter:
    name: str
    required: bool = True
    namespace: Optional[str] = None


@dataclass
class UrlTemplate:
    template: str
    type: Optional[str] = None
    method: str = "GET"
    rel: Optional[str] = None
    index_offset: Optional[int] = None
    page_offset: Optional[int] = None
    params: List[TemplateParameter] = field(default_factory=list)

    @property
    def score(self) -> int:
        value = (self.type or "").lower()
        if OPDS_ATOM_TYPE in value:
            return 300
        if OPDS_JSON_TYPE in value:
            return 200
        if "application/atom+xml" in value:
            return 150
        if "application/json" in value:
            return 100
        return 0


@dataclass
class OpenSearchDescription:
    short_name: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    urls: List[UrlTemplate] = field(default_factory=list)

    @property
    def active_template(self) -> Optional[UrlTemplate]:
        if not self.urls:
            return None
        return sorted(self.urls, key=lambda item: (-item.score, item.method))[0]


def _local_name(tag: object) -> str:
    return tag.rsplit("}", 1)[-1].lower() if isinstance(tag, str) else ""


def _child_text(parent: ET.Element, name: str) -> Optional[str]:
    for child in parent:
        if _local_name(child.tag) == name.lower():
            text = (child.text or "").strip()
            return text or None
    return None


def _split_variable(variable: str):
    required = not variable.endswith("?")
    normalized = variable if required else variable[:-1]
    namespace, _, local = normalized.rpartition(":") if ":" in normalized else ("", "", normalized)
    return required, normalized, namespace or None, local.strip()


def parse_template_parameters(template: str) -> List[TemplateParameter]:
    params: List[TemplateParameter] = []
    for match in _TEMPLATE_RE.finditer(template):
        raw = match.group(1).strip()
        if not raw:
            continue
        expression = raw[1:] if raw[0] in "?&/#.;+" else raw
        for variable in (part.strip() for part in expression.split(",")):
            if not variable:
                continue
            required, _, namespace, name = _split_variable(variable)
            if name:
                params.append(TemplateParameter(name=name, required=required, namespace=namespace))
    return params


def _resolve_template(template: str, base_url: str) -> str:
    masked = template.replace("{", _OPEN).replace("}", _CLOSE)
    return urljoin(base_url, masked).replace(_OPEN, "{").replace(_CLOSE, "}")


def _int_attribute(node: ET.Element, name: str) -> Optional[int]:
    try:
        return int(node.attrib[name])
    except (KeyError, ValueError):
        return None


def parse_opensearch_description(xml_text: Union[str, bytes], base_url: str) -> OpenSearchDescription:
    try:
        root = ET.fromstring(xml_text.strip())
    except ET.ParseError as exc:
        raise FeedParseError(f"Unable to parse OpenSearch description: {exc}", snippet_of(xml_text)) from exc
    if "opensearchdescription" not in _local_name(root.tag):
        raise FeedParseError("Invalid OpenSearch description document", snippet_of(xml_text))

    urls: List[UrlTemplate] = []
    for node in root:
        if _local_name(node.tag) != "url":
            continue
        template = (node.attrib.get("template") or "").strip()
        if not template:
            continue
        resolved = _resolve_template(template, base_url)
        urls.append(
            UrlTemplate(
                template=resolved,
                type=(node.attrib.get("type") or "").strip() or None,
                method=(node.attrib.get("method") or "").strip() or "GET",
                rel=(node.attrib.get("rel") or "").strip() or None,
                index_offset=_int_attribute(node, "indexOffset"),
                page_offset=_int_attribute(node, "pageOffset"),
                params=parse_template_parameters(resolved),
            )
        )

    tags = _child_text(root, "Tags")
    return OpenSearchDescription(
        short_name=_child_text(root, "ShortName"),
        description=_child_text(root, "Description"),
        tags=tags.split() if tags else [],
        urls=urls,
    )


def _lookup(values: Mapping[str, Any], variable: str):
    required, normalized, namespace, local = _split_variable(variable)
    value = values.get(local)
    if value is None:
        value = values.get(normalized)
    if value is None or str(value) == "":
        if required:
            raise OpenSearchError(f"Missing required OpenSearch parameter: {local}")
        return None, normalized
    return quote(str(value), safe=""), normalized


def _expand(expression: str, values: Mapping[str, Any], in_query: bool = False) -> str:
    operator = expression[0] if expression and expression[0] in "?&" else ""
    body = expression[1:] if operator else expression
    if operator == "?" and in_query:
        operator = "&"
    variables = [part.strip() for part in body.split(",") if part.strip()]
    if not operator:
        return ",".join(value or "" for value, _ in (_lookup(values, variable) for variable in variables))
    pairs = []
    for variable in variables:
        value, key = _lookup(values, variable)
        if value is not None:
            pairs.append(f"{key}={value}")
    return f"{operator}{'&'.join(pairs)}" if pairs else ""


def build_opensearch_url(template: Union[str, UrlTemplate], values: Mapping[str, Any]) -> str:
    """Expand an OpenSearch template, dropping empty optional parameters."""
    raw = template.template if isinstance(template, UrlTemplate) else template
    pieces: List[str] = []
    position = 0
    for match in _TEMPLATE_RE.finditer(raw):
        pieces.append(raw[position:match.start()])
        in_query = "?" in "".join(pieces)
        pieces.append(_expand(match.group(1).strip(), values, in_query))
        position = match.end()
    pieces.append(raw[position:])
    return _clean_query("".join(pieces))


def _clean_query(url: str) -> str:
    base, separator, rest = url.partition("?")
    if not separator:
        return url
    query, hash_mark, fragment = rest.partition("#")
    pairs = [pair for pair in query.split("&") if pair and not pair.endswith("=")]
    cleaned = f"{base}?{'&'.join(pairs)}" if pairs else base
    return f"{cleaned}#{fragment}" if hash_mark else cleaned

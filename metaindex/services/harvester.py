"""Outbound fetch and parse of a remote node's self-description.

A harvest is a single GET of the node's client URL followed by an RDF parse of
the response. The node's identity record is the subject whose IRI equals the
client URL; its absence makes the node ``invalid`` even when the document
itself parses.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx
from rdflib import RDF, RDFS, Graph, Literal, Namespace, URIRef
from rdflib.namespace import DCTERMS, OWL

from metaindex.core.results import Failure, FailureKind
from metaindex.core.urls import identity_candidates
from metaindex.domain.models import EntryState, Exchange, ExchangeState

logger = logging.getLogger(__name__)

FDP_O = Namespace("https://w3id.org/fdp/fdp-o#")
DCAT_VERSION = URIRef("http://www.w3.org/ns/dcat#version")

ACCEPT_HEADER = "text/turtle, application/ld+json;q=0.9, application/rdf+xml;q=0.8, application/n-triples;q=0.7"
USER_AGENT = "metaindex-harvester/1.0"

CONTENT_TYPE_FORMATS = {
    "text/turtle": "turtle",
    "application/x-turtle": "turtle",
    "application/ld+json": "json-ld",
    "application/json": "json-ld",
    "application/rdf+xml": "xml",
    "application/xml": "xml",
    "application/n-triples": "nt",
    "text/n3": "n3",
    "application/trig": "trig",
}

NOT_FOUND_ERROR = "Repository not found in metadata"
PARSE_ERROR = "Cannot parse metadata"
BODY_TOO_LARGE_ERROR = "Metadata document exceeds {limit} bytes"


class MetadataParseError(Exception):
    """Raised when a response body is not a readable self-description."""


@dataclass(slots=True)
class HarvestResult:
    exchange: Exchange
    state: EntryState
    metadata: dict[str, Any] | None = None
    error: str | None = None
    failure: Failure | None = None


@dataclass(slots=True)
class FetchResult:
    exchange: Exchange
    body: str | None = None
    content_type: str | None = None
    too_large: bool = False


class MetadataHarvester:
    def __init__(
        self,
        *,
        timeout_seconds: float,
        max_body_bytes: int = 512 * 1024,
        max_redirects: int = 5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_body_bytes = max_body_bytes
        self.max_redirects = max_redirects
        self.transport = transport

    async def harvest(self, client_url: str) -> HarvestResult:
        fetched = await self.fetch(client_url)
        exchange = fetched.exchange
        if fetched.too_large:
            logger.info("metadata document too large client_url=%s limit=%s", client_url, self.max_body_bytes)
            return _invalid(exchange, exchange.error or BODY_TOO_LARGE_ERROR.format(limit=self.max_body_bytes))
        if exchange.state is not ExchangeState.RETRIEVED or fetched.body is None:
            logger.info("cannot retrieve metadata client_url=%s error=%s", client_url, exchange.error)
            error = exchange.error or "no response"
            return HarvestResult(
                exchange=exchange,
                state=EntryState.UNREACHABLE,
                error=error,
                failure=Failure(kind=FailureKind.TRANSPORT, message=error),
            )

        try:
            # parse off the event loop
            metadata = await asyncio.to_thread(
                parse_self_description,
                fetched.body,
                content_type=fetched.content_type,
                client_url=client_url,
            )
        except MetadataParseError as exc:
            logger.info("cannot parse metadata client_url=%s reason=%s", client_url, exc)
            return _invalid(exchange, PARSE_ERROR)

        if metadata is None:
            logger.info("repository not found in metadata client_url=%s", client_url)
            return _invalid(exchange, NOT_FOUND_ERROR)

        return HarvestResult(exchange=exchange, state=EntryState.VALID, metadata=metadata)

    async def fetch(self, client_url: str) -> FetchResult:
        """GET ``client_url`` reading at most ``max_body_bytes`` of the body."""
        exchange = Exchange(request_url=client_url)
        client_kwargs: dict[str, Any] = {
            "timeout": self.timeout_seconds,
            "follow_redirects": True,
            "max_redirects": self.max_redirects,
        }
        if self.transport is not None:
            client_kwargs["transport"] = self.transport

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                async with client.stream(
                    "GET",
                    client_url,
                    headers={"Accept": ACCEPT_HEADER, "User-Agent": USER_AGENT},
                ) as response:
                    raw, too_large = await self._read_capped(response)
                    encoding = response.encoding or "utf-8"
        except httpx.TimeoutException:
            exchange.failed(f"timed out after {self.timeout_seconds:g}s")
            return FetchResult(exchange=exchange)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            exchange.failed(f"{type(exc).__name__}: {exc}")
            return FetchResult(exchange=exchange)

        # cut on bytes, then drop a multi-byte character split by the cut
        recorded_body = raw[: self.max_body_bytes].decode(encoding, errors="ignore")
        if not response.is_success:
            exchange.failed(f"HTTP {response.status_code}", code=response.status_code, body=recorded_body)
            return FetchResult(exchange=exchange)
        if too_large:
            exchange.failed(
                BODY_TOO_LARGE_ERROR.format(limit=self.max_body_bytes),
                code=response.status_code,
                body=recorded_body,
            )
            return FetchResult(exchange=exchange, too_large=True)

        exchange.retrieved(response.status_code, recorded_body)
        return FetchResult(
            exchange=exchange,
            body=raw.decode(encoding, errors="replace"),
            content_type=response.headers.get("content-type"),
        )

    async def _read_capped(self, response: httpx.Response) -> tuple[bytes, bool]:
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return b"", True

        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) > self.max_body_bytes:
                return bytes(buffer), True
        return bytes(buffer), False


def _invalid(exchange: Exchange, error: str) -> HarvestResult:
    return HarvestResult(
        exchange=exchange,
        state=EntryState.INVALID,
        error=error,
        failure=Failure(kind=FailureKind.PARSE, message=error),
    )


def rdf_format_for(content_type: str | None) -> str:
    if not content_type:
        return "turtle"
    media_type = content_type.split(";", maxsplit=1)[0].strip().lower()
    return CONTENT_TYPE_FORMATS.get(media_type, "turtle")


def parse_self_description(body: str, *, content_type: str | None, client_url: str) -> dict[str, Any] | None:
    """Parse ``body`` and return the snapshot of the node's own record, or ``None`` if absent."""
    if not body.strip():
        raise MetadataParseError("empty document")

    graph = Graph()
    try:
        graph.parse(data=body, format=rdf_format_for(content_type), publicID=client_url)
    except Exception as exc:  # rdflib raises parser-specific exception types
        raise MetadataParseError(str(exc) or type(exc).__name__) from exc

    for candidate in identity_candidates(client_url):
        subject = URIRef(candidate)
        if (subject, None, None) in graph:
            return _snapshot(graph, subject)
    return None


def _snapshot(graph: Graph, subject: URIRef) -> dict[str, Any]:
    return {
        "uri": str(subject),
        "types": sorted(str(value) for value in graph.objects(subject, RDF.type)),
        "title": _first_text(graph, subject, DCTERMS.title, RDFS.label),
        "description": _first_text(graph, subject, DCTERMS.description),
        "version": _first_text(graph, subject, DCAT_VERSION, DCTERMS.hasVersion, OWL.versionInfo),
        "publisher": _first_text(graph, subject, DCTERMS.publisher),
        "license": _first_text(graph, subject, DCTERMS.license),
        "conforms_to": _first_text(graph, subject, DCTERMS.conformsTo),
        "catalogs": sorted(str(value) for value in graph.objects(subject, FDP_O.metadataCatalog)),
    }


def _first_text(graph: Graph, subject: URIRef, *predicates: URIRef) -> str | None:
    for predicate in predicates:
        # literals first, then IRIs; sorted for a stable pick
        values = sorted(
            graph.objects(subject, predicate),
            key=lambda value: (not isinstance(value, Literal), str(value)),
        )
        for value in values:
            text = str(value).strip()
            if text:
                return text
    return None

"""Canonical text projections of source entities.

A projector turns one source row (a ``dict`` of column values) into the
``title``/``text``/``metadata`` stored in ``search_documents``. The text is
both embedded and indexed lexically, so it lists every searchable attribute
as ``Label: value`` lines.

A projector returns ``None`` when the entity must not be searchable (for
example an archived candidate); the reindexer then removes its document.

Usage
- ``default_registry`` covers every ``SourceType``
- Custom registries: ``registry = ProjectorRegistry()`` and decorate
  functions with ``@registry.register(SourceType.JOB)``
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from ..models import SourceType

logger = structlog.get_logger("indexer.projectors")


@dataclass
class Projection:
    """Denormalized document content for one entity."""
    text: str
    title: Optional[str] = None
    html: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    permissions: Dict[str, Any] = field(default_factory=dict)


Projector = Callable[[Dict[str, Any]], Optional[Projection]]


class ProjectorRegistry:
    """Maps each ``SourceType`` to its projector."""

    def __init__(self):
        self._projectors: Dict[SourceType, Projector] = {}

    def register(self, source_type: SourceType) -> Callable[[Projector], Projector]:
        """Decorator registering a projector for ``source_type``."""
        def decorator(func: Projector) -> Projector:
            self.add(source_type, func)
            return func
        return decorator

    def add(self, source_type: SourceType, projector: Projector) -> None:
        source_type = SourceType.parse(source_type)
        if source_type in self._projectors:
            logger.info("Replacing projector", source_type=source_type.value)
        self._projectors[source_type] = projector

    def __contains__(self, source_type: Any) -> bool:
        try:
            return SourceType.parse(source_type) in self._projectors
        except ValueError:
            return False

    def project(self, source_type: SourceType, entity: Dict[str, Any]) -> Optional[Projection]:
        """Project ``entity``; raises ``KeyError`` for unregistered types."""
        source_type = SourceType.parse(source_type)
        projector = self._projectors.get(source_type)
        if projector is None:
            raise KeyError(f"No projector registered for {source_type.value}")
        return projector(entity)


def _join(values: Optional[Iterable[Any]]) -> str:
    if not values:
        return ""
    if isinstance(values, str):
        return values
    return ", ".join(str(v) for v in values if v not in (None, ""))


def _yes_no(value: Any) -> str:
    return "Yes" if value else "No"


def _labelled(lines: List[Any]) -> str:
    """Join text lines, dropping empty values and ``Label:`` lines without a value."""
    kept = []
    for line in lines:
        if isinstance(line, tuple):
            label, value = line
            value = "" if value is None else str(value).strip()
            if value:
                kept.append(f"{label}: {value}")
        elif line:
            text = str(line).strip()
            if text:
                kept.append(text)
    return "\n".join(kept)


default_registry = ProjectorRegistry()


@default_registry.register(SourceType.CANDIDATE)
def project_candidate(c: Dict[str, Any]) -> Optional[Projection]:
    if c.get("archived"):
        return None

    name = f"{c.get('first_name') or ''} {c.get('last_name') or ''}".strip()
    current_title = c.get("current_title")
    title = f"{name} - {current_title}" if current_title else name

    text = _labelled([
        c.get("professional_headline"),
        c.get("summary"),
        current_title,
        ("Skills", _join(c.get("technical_skills"))),
        ("Soft", _join(c.get("soft_skills"))),
        ("Frameworks", _join(c.get("frameworks"))),
        ("Languages", _join(c.get("programming_languages"))),
        ("Tools", _join(c.get("tools_and_platforms"))),
        ("Industry", c.get("primary_industry")),
        ("Spoken", _join(c.get("spoken_languages"))),
        ("Tags", _join(c.get("tags"))),
        ("Nationality", c.get("nationality")),
        ("Address", c.get("address")),
        ("Experience Years", c.get("experience_years")),
        ("Degrees", _join(c.get("degrees"))),
        ("Certifications", _join(c.get("certifications"))),
        ("Universities", _join(c.get("universities"))),
        ("Education Level", c.get("education_level")),
        ("Graduation Year", c.get("graduation_year")),
        ("Functional Domain", c.get("functional_domain")),
        ("Expected Salary", c.get("expected_salary")),
        ("Timezone", c.get("timezone")),
        ("Work Permit", c.get("work_permit_type")),
        ("Mobility Countries", _join(c.get("mobility_countries"))),
        ("Mobility Cities", _join(c.get("mobility_cities"))),
        ("Remote Preference", c.get("remote_preference")),
        ("Contract Type", c.get("preferred_contract_type")),
        ("Relocation", _yes_no(c.get("relocation_willingness"))),
        ("Freelancer", _yes_no(c.get("freelancer"))),
        ("Original CV", c.get("original_cv_file_name")),
    ])

    metadata: Dict[str, Any] = {"entity": "candidate"}
    if c.get("original_cv_url"):
        metadata["original_cv_url"] = c["original_cv_url"]
    return Projection(text=text, title=title or None, metadata=metadata)


@default_registry.register(SourceType.JOB)
def project_job(j: Dict[str, Any]) -> Optional[Projection]:
    text = _labelled([
        j.get("description"),
        ("Department", j.get("department")),
        ("Location", j.get("location")),
        ("Job Type", j.get("job_type")),
        ("Experience Level", j.get("experience_level")),
        ("Requirements", _join(j.get("requirements"))),
        ("Responsibilities", _join(j.get("responsibilities"))),
        ("Benefits", _join(j.get("benefits"))),
        ("Required Skills", _join(j.get("required_skills"))),
        ("Preferred Skills", _join(j.get("preferred_skills"))),
    ])
    metadata: Dict[str, Any] = {"entity": "job"}
    if j.get("status"):
        metadata["status"] = j["status"]
    return Projection(text=text, title=j.get("title"), metadata=metadata)


@default_registry.register(SourceType.CLIENT_CONTACT)
def project_client_contact(c: Dict[str, Any]) -> Optional[Projection]:
    name = f"{c.get('first_name') or ''} {c.get('last_name') or ''}".strip()
    role = c.get("role") or c.get("title")
    title = f"{name} - {role}" if role else name

    text = _labelled([
        ("Client", c.get("client_name")),
        ("Role", role),
        ("Email", c.get("email")),
        ("Phone", c.get("phone")),
        ("Location", c.get("location")),
        c.get("notes"),
    ])
    metadata: Dict[str, Any] = {"entity": "client_contact"}
    if c.get("client_id"):
        metadata["client_id"] = str(c["client_id"])
    return Projection(text=text, title=title or None, metadata=metadata)


@default_registry.register(SourceType.CLIENT)
def project_client(c: Dict[str, Any]) -> Optional[Projection]:
    text = _labelled([
        ("Industry", c.get("industry")),
        ("Contact", c.get("contact_person")),
        ("Email", c.get("email")),
        ("Phone", c.get("phone")),
        ("Address", c.get("address")),
    ])
    return Projection(text=text, title=c.get("name"), metadata={"entity": "client"})


@default_registry.register(SourceType.PROJECT)
def project_project(p: Dict[str, Any]) -> Optional[Projection]:
    name = p.get("name") or ""
    client_name = p.get("client_name")
    title = f"{name} ({client_name})" if client_name else name

    text = _labelled([
        p.get("description"),
        ("Client", client_name),
        ("Industry", p.get("industry_background")),
        ("Location", p.get("location")),
        ("Skills", _join(p.get("skills_required"))),
        ("Experience", _join(p.get("experience_required"))),
        ("Languages", _join(p.get("language_requirements"))),
        ("Tags", _join(p.get("tags"))),
    ])
    return Projection(text=text, title=title or None, metadata={"entity": "project"})


@default_registry.register(SourceType.DOCUMENT)
def project_document(d: Dict[str, Any]) -> Optional[Projection]:
    metadata: Dict[str, Any] = {"entity": "document"}
    for key in ("owner_type", "owner_id", "file_name", "mime_type"):
        if d.get(key) is not None:
            metadata[key] = str(d[key])

    return Projection(
        text=(d.get("content") or d.get("text") or "").strip(),
        title=d.get("title") or d.get("file_name"),
        html=d.get("html"),
        metadata=metadata,
        permissions=d.get("permissions") or {},
    )

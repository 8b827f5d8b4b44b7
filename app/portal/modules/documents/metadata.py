"""
Per-category document metadata.

Each category declares which related-item reference it may carry. Parsing goes
through `parse_metadata`, which picks the variant from the `category` key so a
publication can never be filed against a research project by accident.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Literal, Union

from app.portal.modules.documents.errors import INVALID_CATEGORY, INVALID_FIELD, ValidationError

CATEGORIES = (
    "personal",
    "research",
    "publication",
    "community_service",
    "intellectual_property",
    "recognition",
    "other",
)


@dataclass(frozen=True)
class RelatedItem:
    type: str
    id: str


@dataclass(frozen=True)
class PersonalMetadata:
    category: Literal["personal"] = "personal"
    related_item_type: ClassVar[str | None] = None

    @property
    def related_item(self) -> RelatedItem | None:
        return None


@dataclass(frozen=True)
class OtherMetadata:
    category: Literal["other"] = "other"
    related_item_type: ClassVar[str | None] = None

    @property
    def related_item(self) -> RelatedItem | None:
        return None


@dataclass(frozen=True)
class ResearchMetadata:
    category: Literal["research"] = "research"
    research_project_id: str | None = None
    related_item_type: ClassVar[str | None] = "research"

    @property
    def related_item(self) -> RelatedItem | None:
        return RelatedItem("research", self.research_project_id) if self.research_project_id else None


@dataclass(frozen=True)
class PublicationMetadata:
    category: Literal["publication"] = "publication"
    publication_id: str | None = None
    related_item_type: ClassVar[str | None] = "publication"

    @property
    def related_item(self) -> RelatedItem | None:
        return RelatedItem("publication", self.publication_id) if self.publication_id else None


@dataclass(frozen=True)
class CommunityServiceMetadata:
    category: Literal["community_service"] = "community_service"
    community_service_id: str | None = None
    related_item_type: ClassVar[str | None] = "community_service"

    @property
    def related_item(self) -> RelatedItem | None:
        return RelatedItem("community_service", self.community_service_id) if self.community_service_id else None


@dataclass(frozen=True)
class IntellectualPropertyMetadata:
    category: Literal["intellectual_property"] = "intellectual_property"
    intellectual_property_id: str | None = None
    related_item_type: ClassVar[str | None] = "intellectual_property"

    @property
    def related_item(self) -> RelatedItem | None:
        if not self.intellectual_property_id:
            return None
        return RelatedItem("intellectual_property", self.intellectual_property_id)


@dataclass(frozen=True)
class RecognitionMetadata:
    category: Literal["recognition"] = "recognition"
    recognition_id: str | None = None
    related_item_type: ClassVar[str | None] = "recognition"

    @property
    def related_item(self) -> RelatedItem | None:
        return RelatedItem("recognition", self.recognition_id) if self.recognition_id else None


DocumentMetadata = Union[
    PersonalMetadata,
    ResearchMetadata,
    PublicationMetadata,
    CommunityServiceMetadata,
    IntellectualPropertyMetadata,
    RecognitionMetadata,
    OtherMetadata,
]

_VARIANTS: dict[str, type] = {
    "personal": PersonalMetadata,
    "research": ResearchMetadata,
    "publication": PublicationMetadata,
    "community_service": CommunityServiceMetadata,
    "intellectual_property": IntellectualPropertyMetadata,
    "recognition": RecognitionMetadata,
    "other": OtherMetadata,
}

# Field on each variant that holds the related item id.
_ID_FIELDS: dict[str, str] = {
    "research": "research_project_id",
    "publication": "publication_id",
    "community_service": "community_service_id",
    "intellectual_property": "intellectual_property_id",
    "recognition": "recognition_id",
}


def normalize_category(raw: str | None) -> str:
    cat = (raw or "").strip().lower().replace("-", "_")
    if cat not in CATEGORIES:
        raise ValidationError(INVALID_CATEGORY, f"Invalid category. Must be one of: {', '.join(CATEGORIES)}")
    return cat


def parse_metadata(
    category: str | None,
    *,
    related_item_id: str | None = None,
    related_item_type: str | None = None,
) -> DocumentMetadata:
    """
    Build the metadata variant for `category`.

    `related_item_type` may be omitted (it is implied by the category) but, if
    given, must match what the category accepts.
    """
    cat = normalize_category(category)
    variant = _VARIANTS[cat]
    item_id = (related_item_id or "").strip() or None
    item_type = (related_item_type or "").strip().lower() or None

    if item_type and item_type != variant.related_item_type:
        raise ValidationError(
            INVALID_FIELD,
            f"Category '{cat}' cannot reference a related item of type '{item_type}'.",
        )
    if item_id is None:
        return variant()
    field = _ID_FIELDS.get(cat)
    if field is None:
        raise ValidationError(INVALID_FIELD, f"Category '{cat}' does not take a related item.")
    return variant(**{field: item_id})


def metadata_from_document(doc) -> DocumentMetadata:
    return parse_metadata(doc.category, related_item_id=doc.related_item_id, related_item_type=doc.related_item_type)

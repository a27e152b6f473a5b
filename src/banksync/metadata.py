"""Typed institution-specific connection metadata.

Some portals need more than a username and password to log in. Each
institution declares the extra fields it needs as a member of a discriminated
union keyed by the institution slug, so metadata is validated when it enters
or leaves the vault instead of travelling through the pipeline as an untyped
JSON blob.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from banksync.errors import InvalidMetadataError


class _MetadataBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BomMetadata(_MetadataBase):
    """Bank of Melbourne requires a security number alongside the password."""

    institution: Literal["bom"] = "bom"
    security_number: str = Field(..., min_length=1, repr=False)


class AmexMetadata(_MetadataBase):
    """American Express needs nothing beyond username and password."""

    institution: Literal["amex"] = "amex"


InstitutionMetadata = Annotated[
    BomMetadata | AmexMetadata, Field(discriminator="institution")
]

_metadata_adapter: TypeAdapter[BomMetadata | AmexMetadata] = TypeAdapter(
    InstitutionMetadata
)


def validate_metadata(
    slug: str, payload: dict[str, Any] | None
) -> BomMetadata | AmexMetadata | None:
    """Validate a raw metadata mapping for an institution.

    Args:
        slug: Institution slug the metadata belongs to
        payload: Raw metadata fields (without the ``institution`` tag)

    Returns:
        The typed metadata record, or None for institutions without metadata
        when no payload was given

    Raises:
        InvalidMetadataError: If the fields do not match the institution's schema
    """
    data = dict(payload or {})
    tagged = data.setdefault("institution", slug)
    if tagged != slug:
        raise InvalidMetadataError(
            f"Metadata tagged for '{tagged}' cannot be used with '{slug}'"
        )

    try:
        return _metadata_adapter.validate_python(data)
    except ValidationError as e:
        if payload is None and _is_unknown_tag(e):
            return None
        raise InvalidMetadataError(
            f"Invalid metadata for institution '{slug}': {_summarize(e)}"
        ) from e


def metadata_from_json(slug: str, raw: str) -> BomMetadata | AmexMetadata:
    """Parse and validate a JSON metadata document for an institution."""
    try:
        record = _metadata_adapter.validate_json(raw)
    except ValidationError as e:
        raise InvalidMetadataError(
            f"Invalid metadata for institution '{slug}': {_summarize(e)}"
        ) from e

    if record.institution != slug:
        raise InvalidMetadataError(
            f"Metadata tagged for '{record.institution}' cannot be used with '{slug}'"
        )
    return record


def metadata_to_json(record: BomMetadata | AmexMetadata) -> str:
    """Serialize a metadata record for encryption."""
    return record.model_dump_json()


def _is_unknown_tag(error: ValidationError) -> bool:
    return all(err["type"] == "union_tag_invalid" for err in error.errors())


def _summarize(error: ValidationError) -> str:
    # Field names only; values may be secrets
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'metadata'}: {err['type']}"
        for err in error.errors()
    )

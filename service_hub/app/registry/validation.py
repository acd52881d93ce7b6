"""
Field-level validation for server records and submissions.

Every rule runs; callers get the complete list of field errors, never just
the first one.
"""

import re
from typing import Any, List, Mapping
from urllib.parse import urlsplit

from service_hub.app.domain.models import AuthType, FieldError

ID_PATTERN = re.compile(r"^[a-z0-9-]+$")
TAG_PATTERN = re.compile(r"^[a-z0-9-]+$")
GITHUB_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,37}[a-zA-Z0-9])?$")
SEMVER_PATTERN = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+([0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

NAME_MIN, NAME_MAX = 3, 100
DESCRIPTION_MIN, DESCRIPTION_MAX = 10, 200
TAGS_MIN, TAGS_MAX = 1, 10
TAG_MIN, TAG_MAX = 2, 20
AUTHOR_NAME_MIN, AUTHOR_NAME_MAX = 2, 100


def is_https_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme == "https" and bool(parts.hostname)


def is_semver(value: Any) -> bool:
    return isinstance(value, str) and SEMVER_PATTERN.match(value) is not None


def is_github_username(value: Any) -> bool:
    return isinstance(value, str) and GITHUB_USERNAME_PATTERN.match(value) is not None


def derive_server_id(name: str) -> str:
    """Lowercase hyphenated slug of a display name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())
    return slug.strip("-")


def _check_length(errors: List[FieldError], field: str, value: Any, label: str, minimum: int, maximum: int) -> None:
    if not isinstance(value, str) or not value:
        errors.append(FieldError(field=field, message=f"{label} is required", code="REQUIRED_FIELD"))
    elif len(value) < minimum:
        errors.append(FieldError(
            field=field,
            message=f"{label} must be at least {minimum} characters long",
            code="MIN_LENGTH",
        ))
    elif len(value) > maximum:
        errors.append(FieldError(
            field=field,
            message=f"{label} must be {maximum} characters or less",
            code="MAX_LENGTH",
        ))


def _validate_tags(errors: List[FieldError], tags: Any) -> None:
    if not isinstance(tags, list):
        errors.append(FieldError(field="tags", message="Tags must be an array", code="INVALID_TYPE"))
        return
    if len(tags) < TAGS_MIN:
        errors.append(FieldError(field="tags", message="At least one tag is required", code="REQUIRED_FIELD"))
        return
    if len(tags) > TAGS_MAX:
        errors.append(FieldError(field="tags", message=f"Maximum {TAGS_MAX} tags allowed", code="MAX_ITEMS"))
        return

    for index, tag in enumerate(tags):
        field = f"tags[{index}]"
        if not isinstance(tag, str):
            errors.append(FieldError(field=field, message="Each tag must be a string", code="INVALID_TYPE"))
        elif len(tag) < TAG_MIN:
            errors.append(FieldError(
                field=field, message=f"Each tag must be at least {TAG_MIN} characters long", code="MIN_LENGTH"
            ))
        elif len(tag) > TAG_MAX:
            errors.append(FieldError(
                field=field, message=f"Each tag must be {TAG_MAX} characters or less", code="MAX_LENGTH"
            ))
        elif not TAG_PATTERN.match(tag):
            errors.append(FieldError(
                field=field,
                message="Tags can only contain lowercase letters, numbers, and hyphens",
                code="INVALID_FORMAT",
            ))


def _validate_author(errors: List[FieldError], author: Any) -> None:
    if not isinstance(author, Mapping):
        errors.append(FieldError(field="author", message="Author information is required", code="REQUIRED_FIELD"))
        return

    _check_length(errors, "author.name", author.get("name"), "Author name", AUTHOR_NAME_MIN, AUTHOR_NAME_MAX)

    url = author.get("url")
    if url and not is_https_url(url):
        errors.append(FieldError(field="author.url", message="Please enter a valid HTTPS URL", code="INVALID_URL"))

    github = author.get("github")
    if github and not is_github_username(github):
        errors.append(FieldError(
            field="author.github",
            message="Please enter a valid GitHub username",
            code="INVALID_GITHUB_USERNAME",
        ))


def validate_server(candidate: Any) -> List[FieldError]:
    """Return every field error for a candidate record; empty means valid."""
    if not isinstance(candidate, Mapping):
        return [FieldError(field="$", message="Server must be an object", code="INVALID_TYPE")]

    errors: List[FieldError] = []

    server_id = candidate.get("id")
    if not isinstance(server_id, str) or not server_id:
        errors.append(FieldError(field="id", message="Server id is required", code="REQUIRED_FIELD"))
    elif not ID_PATTERN.match(server_id):
        errors.append(FieldError(
            field="id",
            message="Server id can only contain lowercase letters, numbers, and hyphens",
            code="INVALID_FORMAT",
        ))

    _check_length(errors, "name", candidate.get("name"), "Server name", NAME_MIN, NAME_MAX)
    _check_length(errors, "description", candidate.get("description"), "Description", DESCRIPTION_MIN, DESCRIPTION_MAX)

    url = candidate.get("url")
    if not isinstance(url, str) or not url:
        errors.append(FieldError(field="url", message="Server URL is required", code="REQUIRED_FIELD"))
    elif not is_https_url(url):
        errors.append(FieldError(field="url", message="Please enter a valid HTTPS URL", code="INVALID_URL"))

    version = candidate.get("version")
    if not isinstance(version, str) or not version:
        errors.append(FieldError(field="version", message="Version is required", code="REQUIRED_FIELD"))
    elif not is_semver(version):
        errors.append(FieldError(
            field="version",
            message="Please enter a valid semantic version (e.g., 1.0.0)",
            code="INVALID_VERSION",
        ))

    _validate_tags(errors, candidate.get("tags"))
    _validate_author(errors, candidate.get("author"))

    authentication = candidate.get("authentication")
    if authentication is not None:
        if not isinstance(authentication, Mapping):
            errors.append(FieldError(
                field="authentication", message="Authentication must be an object", code="INVALID_TYPE"
            ))
        elif authentication.get("type") not in [auth.value for auth in AuthType]:
            errors.append(FieldError(
                field="authentication.type",
                message="Authentication type must be one of: none, api-key, oauth",
                code="INVALID_VALUE",
            ))

    capabilities = candidate.get("capabilities")
    if capabilities is not None and not isinstance(capabilities, list):
        errors.append(FieldError(field="capabilities", message="Capabilities must be an array", code="INVALID_TYPE"))

    # Verification is granted by maintainers only.
    if candidate.get("verified") is True:
        errors.append(FieldError(
            field="verified",
            message="Verified status cannot be set by submitters",
            code="FORBIDDEN_FIELD",
        ))

    return errors

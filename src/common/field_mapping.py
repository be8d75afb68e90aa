"""
Company field mappings.

Imported company records keep their website, writing-program URL and blog
URL in varying places: the top-level `website` field or one of the free-form
`customFields`. A FieldMapping says where to look. It is passed in by the
caller (defaulting to Config) rather than read from global state, so the
bulk services can be run for different imports side by side.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from src.common.config import Config

WEBSITE_FIELD_HINTS = ("website", "url", "link", "web")
PROGRAM_URL_FIELD_HINTS = ("program", "community", "writing", "url", "link", "contributor")
BLOG_URL_FIELD_HINTS = ("blog", "rss", "feed", "content", "url", "link")


@dataclass(frozen=True)
class FieldMapping:
    """Where to find URLs on a company document."""
    website_custom_field: Optional[str] = None  # None = top-level `website`
    program_url_field: Optional[str] = None
    blog_url_field: Optional[str] = None

    @classmethod
    def from_config(cls) -> "FieldMapping":
        return cls(
            website_custom_field=Config.WEBSITE_CUSTOM_FIELD,
            program_url_field=Config.PROGRAM_URL_FIELD,
            blog_url_field=Config.BLOG_URL_FIELD,
        )


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _custom_field(company: Dict[str, Any], field_name: Optional[str]) -> Optional[str]:
    if not field_name:
        return None
    return _clean((company.get("customFields") or {}).get(field_name))


def get_company_website(company: Dict[str, Any], mapping: Optional[FieldMapping] = None) -> Optional[str]:
    """
    Get a company's website using the field mapping.

    Falls back to the top-level `website` field when no custom field is mapped.
    """
    if mapping and mapping.website_custom_field:
        return _custom_field(company, mapping.website_custom_field)
    return _clean(company.get("website"))


def get_company_program_url(company: Dict[str, Any], mapping: Optional[FieldMapping] = None) -> Optional[str]:
    """Get a writing-program URL from the mapped custom field, if any."""
    if not mapping:
        return None
    return _custom_field(company, mapping.program_url_field)


def get_company_blog_url(company: Dict[str, Any], mapping: Optional[FieldMapping] = None) -> Optional[str]:
    """Get a blog URL from the mapped custom field, if any."""
    if not mapping:
        return None
    return _custom_field(company, mapping.blog_url_field)


def extract_domain_from_url(url: Optional[str]) -> Optional[str]:
    """
    Extract the bare domain from a URL.

    >>> extract_domain_from_url("https://www.example.com/write-for-us")
    'example.com'
    """
    if not url or not url.strip():
        return None
    url = url.strip()
    try:
        parsed = urlparse(url if url.startswith("http") else f"https://{url}")
        hostname = parsed.hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname[4:] if hostname.startswith("www.") else hostname


def _potential_fields(companies: Iterable[Dict[str, Any]], hints: Iterable[str]) -> List[str]:
    hints = tuple(hints)
    names = set()
    for company in companies:
        for field_name in (company.get("customFields") or {}):
            lower = field_name.lower()
            if any(hint in lower for hint in hints):
                names.add(field_name)
    return sorted(names)


def get_potential_website_fields(companies: Iterable[Dict[str, Any]]) -> List[str]:
    """Custom field names that might hold a website."""
    return _potential_fields(companies, WEBSITE_FIELD_HINTS)


def get_potential_program_url_fields(companies: Iterable[Dict[str, Any]]) -> List[str]:
    """Custom field names that might hold a writing-program URL."""
    return _potential_fields(companies, PROGRAM_URL_FIELD_HINTS)


def get_potential_blog_url_fields(companies: Iterable[Dict[str, Any]]) -> List[str]:
    """Custom field names that might hold a blog URL."""
    return _potential_fields(companies, BLOG_URL_FIELD_HINTS)

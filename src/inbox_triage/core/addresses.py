"""Email address helpers shared across components."""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import getaddresses, parseaddr


def domain_of(address: str | None) -> str:
    """Lowercased domain part of an address ('' when there is none)."""
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[-1].strip().lower().rstrip(">")


def is_company_domain(domain: str | None, company_domains: Iterable[str]) -> bool:
    """True for a company domain or any of its subdomains."""
    if not domain:
        return False
    domain = domain.lower()
    for company in company_domains:
        company = company.lower().lstrip("@")
        if company and (domain == company or domain.endswith("." + company)):
            return True
    return False


def parse_address(value: str | None) -> tuple[str | None, str]:
    """Split a header value into (display name, lowercased address)."""
    name, address = parseaddr(value or "")
    return (name or None), address.strip().lower()


def parse_address_list(values: Iterable[str]) -> list[str]:
    """Addresses from To/Cc header values, lowercased, empty entries dropped."""
    return [address.strip().lower() for _, address in getaddresses(list(values)) if address.strip()]

"""Automated (non-human) sender detection.

Used by the classifier post-processing step and the fallback heuristics.
Matching is plain string comparison on the lowercased address; no regex
runs on attacker-controlled input here.
"""

from __future__ import annotations

from inbox_triage.core.addresses import domain_of, is_company_domain

AUTOMATED_LOCAL_PARTS = frozenset(
    {
        "noreply",
        "no-reply",
        "no_reply",
        "do-not-reply",
        "donotreply",
        "do_not_reply",
        "marketplace-messages",
        "notifications",
        "notification",
        "alerts",
        "alert",
        "digest",
        "newsletter",
        "newsletters",
        "marketing",
        "promo",
        "mailer-daemon",
        "postmaster",
        "updates",
        "info",
        "support",
        "feedback",
        "survey",
        "billing",
        "receipts",
        "orders",
        "shipping",
        "auto",
        "automated",
        "bounce",
        "bounces",
        "unsubscribe",
    }
)

NO_REPLY_MARKERS = ("noreply", "no-reply", "no_reply", "donotreply", "do-not-reply")

AUTOMATED_DOMAINS = frozenset(
    {
        "amazonses.com",
        "sendgrid.net",
        "mailchimp.com",
        "mcsv.net",
        "constantcontact.com",
        "mandrillapp.com",
        "mailgun.org",
        "sparkpostmail.com",
    }
)


def is_automated_sender(address: str | None) -> bool:
    """True when the address looks like a machine sender.

    Checks the local part against known non-human aliases (and "p+"/"p."
    VERP-style prefixes), any no-reply marker, and bulk-mail delivery domains
    including their subdomains.
    """
    if not address or "@" not in address:
        return False
    local, _, domain = address.strip().lower().rpartition("@")

    if local in AUTOMATED_LOCAL_PARTS or local.startswith(("p+", "p.")):
        return True
    if any(marker in local for marker in NO_REPLY_MARKERS):
        return True
    return is_company_domain(domain, tuple(AUTOMATED_DOMAINS))


def is_automated_outside_company(address: str | None, company_domains: tuple[str, ...]) -> bool:
    """Automated sender that is not on the user's own company domain."""
    if not is_automated_sender(address):
        return False
    return not is_company_domain(domain_of(address), company_domains)

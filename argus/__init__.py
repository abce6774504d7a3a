"""Argus — carrier portal scraping service.

Argus drives remote browser profiles through insurance-carrier agent portals
(GTL, ANAM, AETNA, ...), walks their paginated "my business" listings and
stores every policy row as a normalised record. A scrape is organised as a
session: an operator starts it, authenticates in the remote browser when the
portal needs a human, confirms readiness, and polls progress while the
service paginates.
"""

__version__ = "0.1.0"

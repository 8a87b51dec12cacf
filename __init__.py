"""
Lead Enrichment Console

Imports prospect spreadsheets, finds business emails and verifies them through
GetProspect, looks up LinkedIn profiles through Perplexity, and keeps a
per-user cache and history of every lookup in Supabase.
"""

__version__ = "1.0.0"
__author__ = "Lead Enrichment Console"
__description__ = "Email finding, email verification and LinkedIn lookup for prospect lists"

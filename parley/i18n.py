"""
User-visible strings posted by the bots.

Only English ships with the package; other locales can be layered in with
register_catalog(). Lookups fall back to English, then to the key itself.
"""

from __future__ import annotations

DEFAULT_LOCALE = "en"

_CATALOGS: dict[str, dict[str, str]] = {
    "en": {
        "llm_no_result": "Sorry! The LLM did not return a result.",
        "llm_error": "Sorry! An error occurred while accessing the LLM. See server logs for details.",
        "no_access_to_thread": "Sorry, you no longer have access to the original thread.",
        "search_no_results": (
            "I couldn't find any relevant messages for your query. "
            "Please try a different search term."
        ),
        "search_error": (
            "I encountered an error while searching. "
            "Please try again later. See server logs for details."
        ),
        "tool_call_rejected": "Tool call rejected by user",
        "tool_call_failed": "Tool call failed",
        "thread_summary_title": "Thread Summary",
        "action_items_title": "Action Items",
        "open_questions_title": "Open Questions",
        "summarize_unreads_title": "Summarize Unreads",
        "summarize_channel_title": "Summarize Channel",
        "find_action_items_title": "Find Action Items",
        "find_open_questions_title": "Find Open Questions",
        "meeting_summary_title": "Meeting Summary",
        "analysis_summarize_thread": "Sure, I will summarize this thread: {site_url}/_redirect/pl/{post_id}\n",
        "analysis_action_items": "Sure, I will find action items in this thread: {site_url}/_redirect/pl/{post_id}\n",
        "analysis_open_questions": "Sure, I will find open questions in this thread: {site_url}/_redirect/pl/{post_id}\n",
        "analysis_default": "Sure, I will analyze this thread: {site_url}/_redirect/pl/{post_id}\n",
    },
}


def register_catalog(locale: str, messages: dict[str, str]) -> None:
    """Add or extend the message catalog for a locale."""
    _CATALOGS.setdefault(locale, {}).update(messages)


def translate(key: str, locale: str = DEFAULT_LOCALE) -> str:
    """Localised message for key; English when the locale lacks it."""
    lang = (locale or DEFAULT_LOCALE).split("-")[0].split("_")[0].lower()
    for candidate in (locale, lang, DEFAULT_LOCALE):
        catalog = _CATALOGS.get(candidate)
        if catalog and key in catalog:
            return catalog[key]
    return key


def format_analysis_post_message(locale: str, post_id: str, analysis_type: str, site_url: str) -> str:
    """Opening line of the DM that carries a thread analysis."""
    key = {
        "summarize_thread": "analysis_summarize_thread",
        "action_items": "analysis_action_items",
        "open_questions": "analysis_open_questions",
    }.get(analysis_type, "analysis_default")
    return translate(key, locale).format(site_url=site_url, post_id=post_id)

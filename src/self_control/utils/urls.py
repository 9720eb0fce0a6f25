PREFIXES = ("www.", "https://", "http://")
SUFFIXES = (".com", ".org")


def format_string(data: str) -> str:
    """Lower-cases, strips and removes inner spaces ('  Face Book.com ' -> 'facebook.com')."""
    return data.strip().lower().replace(" ", "")


def name_from_url(url: str) -> str:
    """Derives a short display name from a URL ('www.reddit.com' -> 'reddit')."""
    # Prefixes are trimmed in order, so 'https://www.' only loses 'https://'.
    for prefix in PREFIXES:
        url = url.removeprefix(prefix)
    for suffix in SUFFIXES:
        url = url.removesuffix(suffix)
    return format_string(url)

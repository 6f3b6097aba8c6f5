"""Fast heuristic hostname categorization.

Classifies hostnames into categories based on substring patterns.
No LLM required - designed for low-latency inline classification, and safe
to run inside the sandboxed enforcement point.
"""

import re

CATEGORY_PATTERNS: dict[str, list[str]] = {
    "games": [
        "roblox",
        "fortnite",
        "minecraft",
        "steam",
        "epicgames",
        "playstation",
        "xbox",
        "nintendo",
        "itch.io",
        "battle.net",
        "blizzard",
        "leagueoflegends",
        "valorant",
        "twitch.tv",
        "gaming",
    ],
    "social_media": [
        "tiktok",
        "instagram",
        "twitter",
        "facebook",
        "snapchat",
        "discord",
        "reddit",
        "tumblr",
        "pinterest",
        "threads.net",
        "bsky.app",
        "whatsapp",
        "telegram",
    ],
    "ai_tools": [
        "chatgpt",
        "openai",
        "claude.ai",
        "anthropic",
        "gemini",
        "perplexity",
        "character.ai",
        "replika",
        "poe.com",
    ],
    "video": [
        "youtube",
        "youtu.be",
        "netflix",
        "hulu",
        "disneyplus",
        "primevideo",
        "crunchyroll",
        "vimeo",
        "dailymotion",
    ],
    "educational": [
        "wikipedia",
        "khanacademy",
        "coursera",
        "edx.org",
        "quizlet",
        "britannica",
        "duolingo",
        "scratch.mit.edu",
        "codecademy",
    ],
    "shopping": [
        "amazon.com",
        "ebay",
        "etsy",
        "walmart",
        "aliexpress",
        "shein",
        "temu",
    ],
    "news": [
        "cnn.com",
        "bbc.com",
        "nytimes",
        "reuters",
        "apnews",
        "npr.org",
    ],
    "adult": [
        "porn",
        "xxx",
        "adult",
        "sex",
    ],
    "gambling": [
        "casino",
        "poker",
        "bet365",
        "betting",
        "gambling",
    ],
    "violence": [
        "gore",
        "violence",
        "liveleak",
    ],
}

# Free-form tags users and models produce, mapped onto canonical categories
CATEGORY_ALIASES: dict[str, str] = {
    "social": "social_media",
    "social media": "social_media",
    "socialmedia": "social_media",
    "gaming": "games",
    "game": "games",
    "videos": "video",
    "streaming": "video",
    "entertainment": "video",
    "youtube": "video",
    "education": "educational",
    "pornography": "adult",
    "adult content": "adult",
    "nsfw": "adult",
    "violent": "violence",
    "weapons": "violence",
    "betting": "gambling",
    "ai": "ai_tools",
    "chatbots": "ai_tools",
}


def normalize_category(tag: str) -> str:
    """Map a free-form category tag onto its canonical name.

    "Social Media" -> "social_media", "gaming" -> "games". Unknown tags are
    lowercased with runs of spaces/dashes collapsed to underscores.
    """
    cleaned = " ".join(tag.strip().lower().replace("_", " ").replace("-", " ").split())
    if not cleaned:
        return ""
    if cleaned in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[cleaned]
    return re.sub(r"\s+", "_", cleaned)


def clean_hostname(hostname: str) -> str:
    """Lowercase a hostname and strip any port and leading "www."."""
    host = hostname.strip().lower()
    if "://" in host:
        host = host.split("://", 1)[1]
    host = host.split("/", 1)[0]
    if host.startswith("[") and "]" in host:
        return host[1:host.index("]")]
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    if host.startswith("www."):
        host = host[4:]
    return host


def classify_hostname(hostname: str) -> list[str]:
    """Return every category whose patterns match the hostname."""
    host = clean_hostname(hostname)
    return [
        category
        for category, patterns in CATEGORY_PATTERNS.items()
        if any(pattern in host for pattern in patterns)
    ]

from math import ceil

SEED_TOTAL = 300

SEED_NICHES = [
    ("Finance", 3),
    ("AI tools", 3),
    ("Ecommerce", 2),
    ("Fitness", 2),
    ("Content Creation", 1),
]

REQUIRED_PHRASES = ["how to", "beginner", "mistakes", "0 subscribers"]

NICHE_STEMS = {
    "Finance": [
        "invest", "save money", "budget", "stocks", "crypto", "side hustle", "passive income",
        "credit score", "pay off debt", "retirement", "trading", "real estate", "taxes",
        "make money", "financial freedom", "emergency fund", "dividends", "ETF", "index funds",
        "personal finance", "wealth building", "money management", "frugal living", "income",
    ],
    "AI tools": [
        "ChatGPT", "AI automation", "AI writing", "AI video", "AI coding", "prompt engineering",
        "AI for business", "AI marketing", "AI content", "machine learning", "AI productivity",
        "AI design", "AI copywriting", "AI images", "AI tools review", "AI workflow",
        "AI agents", "AI research", "AI for creators", "AI tutorials", "AI tips",
        "AI side hustle", "AI freelancing", "AI no-code", "AI for beginners",
    ],
    "Ecommerce": [
        "dropshipping", "Amazon FBA", "shopify", "product research", "ecommerce store",
        "online store", "sell online", "product photography", "ecommerce marketing",
        "niche store", "print on demand", "fulfillment", "ecommerce SEO", "product launch",
        "ecommerce ads", "conversion rate", "ecommerce for beginners", "store design",
        "inventory", "supplier", "ecommerce analytics", "ecommerce automation",
        "ecommerce 2024", "ecommerce tips", "scaling ecommerce",
    ],
    "Fitness": [
        "lose weight", "build muscle", "home workout", "gym", "nutrition", "diet",
        "cardio", "strength training", "HIIT", "yoga", "running", "bodyweight",
        "fitness routine", "workout plan", "fat loss", "gain muscle", "fitness tips",
        "healthy eating", "supplements", "fitness motivation", "transformation",
        "fitness for beginners", "abs workout", "leg day", "upper body", "fitness journey",
    ],
    "Content Creation": [
        "YouTube growth", "viral content", "content strategy", "editing", "thumbnail",
        "algorithm", "monetization", "niche down", "content ideas", "filming",
        "short form", "long form", "content calendar", "creator economy", "influencer",
        "content for beginners", "editing software", "lighting", "microphone",
        "content creation tips", "grow channel", "content plan", "content marketing",
        "creator tips", "content consistency",
    ],
}


def generate_seed_keywords(total: int = SEED_TOTAL) -> list[dict]:
    """
    Starter keyword set spread across the seed niches.

    Every niche gets the required phrases first, then stem variants
    ("how to X", "X for beginners", "X mistakes", ...) until its share is used.
    Duplicates (case-insensitive, per niche) are dropped.
    """
    entries: list[dict] = []
    seen: set[tuple[str, str]] = set()

    def add(keyword: str, niche: str, priority: int) -> None:
        key = (keyword.lower().strip(), niche)
        if key in seen:
            return
        seen.add(key)
        entries.append({"keyword": keyword.strip(), "niche": niche, "priority": priority})

    per_niche = ceil(total / len(SEED_NICHES))

    for niche, priority in SEED_NICHES:
        stems = NICHE_STEMS.get(niche, [])
        count = 0

        for phrase in REQUIRED_PHRASES:
            add(f"{phrase} {niche.lower()}", niche, priority)
            add(f"{niche} {phrase}", niche, priority)
            if phrase == "0 subscribers":
                add(f"{phrase} {niche} channel", niche, priority)

        for stem in stems:
            if count >= per_niche:
                break
            add(f"how to {stem}", niche, priority)
            count += 1
        for stem in stems:
            if count >= per_niche:
                break
            add(f"beginner {stem}", niche, priority)
            add(f"{stem} for beginners", niche, priority)
            count += 2
        for stem in stems:
            if count >= per_niche:
                break
            add(f"{stem} mistakes", niche, priority)
            count += 1
        for stem in stems[:10]:
            if count >= per_niche:
                break
            add(f"0 subscribers {stem}", niche, priority)
            count += 1
        for stem in stems:
            if count >= per_niche:
                break
            add(stem, niche, priority)
            add(f"{stem} tips", niche, priority)
            add(f"best {stem}", niche, priority)
            count += 3

    return entries[:total]

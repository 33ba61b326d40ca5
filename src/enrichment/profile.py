"""Heuristics derived from a contributor's GitHub profile."""

from collections import Counter

FRONTEND_LANGUAGES = {"JavaScript", "TypeScript", "HTML", "CSS", "Vue", "Svelte"}
BACKEND_LANGUAGES = {"Python", "Java", "C#", "Ruby", "PHP", "Go", "Rust", "C++", "C", "Scala", "Elixir"}
DATA_LANGUAGES = {"R", "Julia", "Jupyter Notebook"}
MOBILE_LANGUAGES = {"Swift", "Kotlin", "Objective-C", "Dart"}
DEVOPS_LANGUAGES = {"Shell", "Dockerfile", "HCL", "Nix", "PowerShell"}

MAX_IMPACT_SCORE = 100
TOP_LANGUAGE_LIMIT = 5


def _band(value: int, bands: list[tuple[int, int]], floor: int) -> int:
    """Points for the first threshold ``value`` exceeds."""
    for threshold, points in bands:
        if value > threshold:
            return points
    return floor


def calculate_impact_score(profile: dict, contributions: int = 0) -> int:
    """Banded 0-100 estimate of a contributor's reach and activity."""
    score = 0
    if contributions:
        score += _band(contributions, [(100, 30), (50, 20), (10, 10)], 5)

    followers = profile.get("followers") or 0
    if followers:
        score += _band(followers, [(1000, 25), (500, 20), (100, 15), (10, 10)], 5)

    public_repos = profile.get("public_repos") or 0
    if public_repos:
        score += _band(public_repos, [(50, 20), (20, 15), (5, 10)], 5)

    for key in ("name", "bio", "company", "blog", "location"):
        if profile.get(key):
            score += 5

    return min(score, MAX_IMPACT_SCORE)


def top_languages(repositories: list[dict], limit: int = TOP_LANGUAGE_LIMIT) -> list[str]:
    """Most used primary languages across a user's own (non-fork) repositories."""
    counts = Counter(
        repo["language"]
        for repo in repositories
        if isinstance(repo, dict) and repo.get("language") and not repo.get("fork")
    )
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [language for language, _ in ranked[:limit]]


def classify_role(languages: list[str] | None) -> str:
    if not languages:
        return "Unknown"

    top = languages[0]
    if top in FRONTEND_LANGUAGES:
        return "Frontend Developer"
    if top in BACKEND_LANGUAGES:
        return "Backend Developer"
    if top in DATA_LANGUAGES:
        return "Data Scientist"
    if top in MOBILE_LANGUAGES:
        return "Mobile Developer"
    if top in DEVOPS_LANGUAGES:
        return "DevOps Engineer"
    return "Software Developer"

from src.enrichment.github_enricher import EnrichmentOutcome, GitHubEnricher

__all__ = ["EnrichmentOutcome", "GitHubEnricher"]

from src.extraction.entity_extractor import ExtractedEntity, extract
from src.extraction.extraction_service import ExtractionService
from src.extraction.persistence import EntityPersister

__all__ = ["ExtractedEntity", "EntityPersister", "ExtractionService", "extract"]

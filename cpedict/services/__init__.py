from .ingestion_service import IngestionPipeline, IngestionStats

__all__ = ['IngestionPipeline', 'IngestionStats']

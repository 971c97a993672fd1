class KnowledgeBaseError(Exception):
    pass


class EmbeddingError(KnowledgeBaseError):
    pass


class EmbeddingModelLoadError(EmbeddingError):
    pass


class EmbeddingGenerationError(EmbeddingError):
    pass


class IngestionError(KnowledgeBaseError):
    pass


class EmptyInputError(IngestionError):
    pass


class FatalIngestionError(IngestionError):
    """The run cannot continue at all (unreadable file, model unavailable)."""


class BatchProcessingError(IngestionError):
    def __init__(self, batch_number: int, cause: Exception):
        self.batch_number = batch_number
        self.cause = cause
        super().__init__(f"Batch {batch_number} error: {cause}")

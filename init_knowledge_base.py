"""
Initialize the legal knowledge base.

Creates the vector and consultation schemas, loads legal documents (and
optionally document templates) from a JSON file, indexes them, then
builds the HNSW index.

JSON layout:
    {
        "documents": [{"id": ..., "title": ..., "type": "law", "content": ..., "category": ..., "tags": [...]}],
        "templates": [{"id": ..., "name": ..., "type": "claim", "category": ..., "template": ...}]
    }
A bare list is treated as a list of documents.

Usage:
    python init_knowledge_base.py --file data/legal_documents.json
    python init_knowledge_base.py --schema-only
"""

import sys
import json
import time
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def load_payload(path: Path) -> tuple[list[dict], list[dict]]:
    """Return (documents, templates) from a JSON file."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, list):
        return data, []
    return list(data.get("documents") or []), list(data.get("templates") or [])


def main():
    arg_parser = argparse.ArgumentParser(description="Initialize the legal knowledge base")
    arg_parser.add_argument("--file", type=str, help="JSON file with documents and templates")
    arg_parser.add_argument("--chunk-size", type=int, default=None, help="Chunk size in characters")
    arg_parser.add_argument("--chunk-overlap", type=int, default=None, help="Chunk overlap in characters")
    arg_parser.add_argument("--schema-only", action="store_true", help="Create tables and exit")
    arg_parser.add_argument("--skip-index", action="store_true", help="Do not build the HNSW index")
    args = arg_parser.parse_args()

    if not args.schema_only and not args.file:
        arg_parser.error("--file is required unless --schema-only is given")

    from execution.consult_rag.chunker import ChunkConfig
    from execution.consult_rag.config import RAGConfig
    from execution.consult_rag.consultation_store import ConsultationStore
    from execution.consult_rag.database import Database
    from execution.consult_rag.embeddings import get_embedding_service
    from execution.consult_rag.errors import RAGError
    from execution.consult_rag.knowledge import DocumentTemplate, LegalDocument, LegalKnowledgeService
    from execution.consult_rag.object_storage import ObjectStorage
    from execution.consult_rag.vector_store import VectorStore

    config = RAGConfig.from_env()
    database = Database(config.database)
    database.connect()

    vector_store = VectorStore(config.vector, database)
    knowledge = LegalKnowledgeService(
        config,
        get_embedding_service(config.embedding),
        vector_store,
        ObjectStorage(config.storage),
    )

    try:
        knowledge.initialize()
        ConsultationStore(database).initialize_schema()
        if args.schema_only:
            logger.info("Schema created")
            return

        path = Path(args.file)
        if not path.exists():
            logger.error(f"File not found: {path}")
            sys.exit(1)

        raw_documents, raw_templates = load_payload(path)
        logger.info(f"Loaded {len(raw_documents)} documents and {len(raw_templates)} templates from {path}")

        chunk_config = None
        if args.chunk_size is not None or args.chunk_overlap is not None:
            chunk_config = ChunkConfig(
                chunk_size=args.chunk_size or config.indexing.chunk_size,
                chunk_overlap=config.indexing.chunk_overlap if args.chunk_overlap is None else args.chunk_overlap,
            )

        documents = []
        for raw in raw_documents:
            try:
                documents.append(LegalDocument.from_dict(raw))
            except KeyError as e:
                logger.warning(f"Skipping document without {e}: {raw.get('id', '?')}")

        start = time.time()
        results = knowledge.upload_legal_documents(documents, chunk_config)
        for result in results:
            if not result.ok:
                logger.warning(f"  {result.document_id}: {result.status} ({result.error})")

        for raw in raw_templates:
            try:
                knowledge.save_document_template(DocumentTemplate.from_dict(raw))
            except (KeyError, RAGError) as e:
                logger.warning(f"Skipping template {raw.get('id', '?')}: {e}")

        if not args.skip_index:
            vector_store.create_vector_index()

        indexed = sum(1 for r in results if r.ok)
        stats = knowledge.get_knowledge_base_stats()
        logger.info(
            f"Done in {time.time() - start:.1f}s: {indexed}/{len(results)} documents indexed, "
            f"{stats['chunk_count']} chunks, {stats['total_templates']} templates"
        )
        if indexed < len(results):
            sys.exit(2)
    finally:
        database.close()


if __name__ == "__main__":
    main()

# File: content_pipeline/main.py
import argparse
import json
import pathlib
import sys
import threading
import uuid
from typing import Callable, List, Optional

import structlog

from dotenv import load_dotenv
load_dotenv()

from prometheus_client import start_http_server

from content_pipeline.core.logging_config import setup_logging
setup_logging()

from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import PipelineError
from content_pipeline import dependencies
from content_pipeline.application.ports.message_transport_port import MessageTransportPort
from content_pipeline.domain.messages import RpcRequest
from content_pipeline.domain.models import DocumentFormat, IndexStage
from content_pipeline.workers.handlers import (
    CleanupHandler, CompletionHandler, DocumentStatusResponder, ExtractContentHandler, IndexStageHandler,
)
from content_pipeline.workers.runtime import WorkerRuntime
from content_pipeline.workers.sweeper import StaleDocumentSweeper

log = structlog.get_logger(__name__)

WORKER_ROLES = ("extract", "index-fulltext", "index-embedding", "orchestrator")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="content_pipeline", description="Document ingestion pipeline.")
    roles = parser.add_subparsers(dest="role", required=True)

    roles.add_parser("extract", help="Run the extraction worker.")
    roles.add_parser("index-fulltext", help="Run the full-text indexing worker.")
    roles.add_parser("index-embedding", help="Run the embedding indexing worker.")
    roles.add_parser("orchestrator", help="Run completion, cleanup, status RPC and the stale sweep.")
    roles.add_parser("init-db", help="Create the document store tables.")
    roles.add_parser("sweep", help="Fail stale documents once and exit.")

    submit = roles.add_parser("submit", help="Upload a file and request its extraction.")
    submit.add_argument("path", type=pathlib.Path)
    submit.add_argument("--owner-id", type=uuid.UUID, required=True)
    submit.add_argument("--format", choices=[f.value for f in DocumentFormat], default=None)

    status = roles.add_parser("status", help="Query a document's state over broker RPC.")
    status.add_argument("document_id", type=uuid.UUID)

    delete = roles.add_parser("delete", help="Mark a document for deletion and schedule cleanup.")
    delete.add_argument("document_id", type=uuid.UUID)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    log.info("Starting content pipeline", role=args.role,
             config=settings.model_dump(exclude={'OPENAI_API_KEY', 'MEILISEARCH_API_KEY', 'MILVUS_TOKEN'}))

    if args.role in WORKER_ROLES:
        return run_worker(args.role)
    return run_command(args)


def run_worker(role: str) -> int:
    """Builds the role's runtimes and blocks until interrupted."""
    try:
        start_http_server(settings.METRICS_PORT)
        log.info(f"Prometheus metrics server started on port {settings.METRICS_PORT}.")

        transport = dependencies.get_transport()
        store = dependencies.get_document_store()
        blob_store = dependencies.get_blob_store()
        orchestrator = dependencies.get_orchestrator(store, transport, blob_store)
        loops, sweeper = _build_role(role, transport, store, blob_store, orchestrator)
    except Exception as e:
        log.critical("Failed to initialize worker dependencies", role=role, error=str(e), exc_info=True)
        sys.exit(1)

    log.info("Worker initialized successfully. Starting consumption loops...", role=role, loops=len(loops))
    threads = [threading.Thread(target=loop, name=f"{role}-{i}", daemon=True) for i, loop in enumerate(loops)]
    exit_code = 0
    try:
        for thread in threads:
            thread.start()
        if sweeper is not None:
            sweeper.start()
        while all(thread.is_alive() for thread in threads):
            for thread in threads:
                thread.join(timeout=1.0)
        log.critical("A consumption loop stopped unexpectedly. Exiting.", role=role)
        exit_code = 1
    except KeyboardInterrupt:
        log.info("Shutdown signal received.")
    finally:
        log.info("Closing worker resources...")
        if sweeper is not None:
            sweeper.stop()
        transport.stop()
        for thread in threads:
            thread.join(timeout=10.0)
        transport.close()
        log.info("Worker shut down gracefully.")
    return exit_code


def _build_role(role, transport: MessageTransportPort, store, blob_store, orchestrator):
    topics = orchestrator.topics
    sweeper: Optional[StaleDocumentSweeper] = None
    loops: List[Callable[[], None]] = []

    if role == "extract":
        handler = ExtractContentHandler(orchestrator, blob_store, dependencies.get_extract_content_use_case())
        loops.append(WorkerRuntime(transport, topics.extract, handler).run)
    elif role == "index-fulltext":
        handler = IndexStageHandler(dependencies.get_fulltext_dispatcher(), orchestrator, transport)
        loops.append(WorkerRuntime(transport, topics.index_topic(IndexStage.FULLTEXT), handler).run)
    elif role == "index-embedding":
        handler = IndexStageHandler(dependencies.get_embedding_dispatcher(), orchestrator, transport)
        loops.append(WorkerRuntime(transport, topics.index_topic(IndexStage.EMBEDDING), handler).run)
    elif role == "orchestrator":
        cleanup = CleanupHandler(dependencies.get_cleanup_use_case(store, blob_store))
        responder = DocumentStatusResponder(orchestrator)
        loops.append(WorkerRuntime(transport, topics.completion, CompletionHandler(orchestrator)).run)
        loops.append(WorkerRuntime(transport, topics.cleanup, cleanup).run)
        loops.append(lambda: transport.serve_rpc(settings.KAFKA_RPC_TOPIC, responder))
        sweeper = StaleDocumentSweeper(orchestrator)
    return loops, sweeper


def run_command(args: argparse.Namespace) -> int:
    """One-shot administrative commands."""
    transport: Optional[MessageTransportPort] = None
    try:
        if args.role == "init-db":
            dependencies.get_document_store().create_schema()
            _emit({"status": "ok"})
            return 0

        transport = dependencies.get_transport()
        if args.role == "status":
            response = transport.call(
                settings.KAFKA_RPC_TOPIC,
                RpcRequest(method="document_status", params={"document_id": str(args.document_id)}),
                timeout=settings.RPC_TIMEOUT_SECONDS,
            )
            _emit(response.model_dump(mode="json"))
            return 0 if response.is_ok else 1

        store = dependencies.get_document_store()
        if args.role == "submit":
            orchestrator = dependencies.get_orchestrator(store, transport, dependencies.get_blob_store())
            document_format = (
                DocumentFormat(args.format) if args.format else DocumentFormat.from_filename(args.path.name)
            )
            document = orchestrator.submit_document(
                owner_id=args.owner_id,
                original_name=args.path.name,
                document_format=document_format,
                blob=args.path.read_bytes(),
            )
            _emit({"document_id": str(document.id), "storage_key": document.storage_key,
                   "state": document.state.value})
            return 0

        orchestrator = dependencies.get_orchestrator(store, transport)
        if args.role == "delete":
            found = orchestrator.request_deletion(args.document_id)
            _emit({"document_id": str(args.document_id), "deletion_requested": found})
            return 0 if found else 1
        if args.role == "sweep":
            swept = orchestrator.sweep_stale_documents()
            _emit({"swept": [str(document_id) for document_id in swept]})
            return 0
    except (PipelineError, OSError, ValueError) as e:
        log.critical("Command failed", role=args.role, error=str(e), exc_info=True)
        sys.exit(1)
    finally:
        if transport is not None:
            transport.close()
    raise ValueError(f"Unknown role '{args.role}'")


def _emit(payload) -> None:
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    sys.exit(main())

"""
API endpoints for FloatAST parsing, querying and fragment extraction.

This module handles:
- Parsing a stored conversation (or posted text) into a FloatAST
- Reading stored FloatAST documents
- Evaluating FloatQL queries against a document
- Extracting query-relevant fragments
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from models_float_ast import (
    ExtractFragmentsRequest,
    ExtractFragmentsResponse,
    FloatAST,
    ParseOptions,
    ParseTextRequest,
)
from services_float_ast import dump_float_ast, load_float_ast, parse_and_store, parse_conversation_to_float_ast
from services_floatql import evaluate_query
from services_fragment_extraction import aextract_fragments
from storage import DocumentStorage, get_storage

router = APIRouter(tags=["float-ast"])


def _load_document(storage: DocumentStorage, ast_id: str) -> FloatAST:
    document = storage.get_float_ast(ast_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"FloatAST {ast_id} not found")
    return load_float_ast(document)


@router.post("/conversations/{conversation_id}/parse", status_code=201)
def parse_conversation_endpoint(
    conversation_id: str,
    options: Optional[ParseOptions] = Body(default=None),
    storage: DocumentStorage = Depends(get_storage),
):
    """
    Parse a stored conversation into a FloatAST and persist it.
    """
    options = options or ParseOptions()
    ast = parse_and_store(conversation_id, storage, **options.model_dump())
    if ast is None:
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")
    return dump_float_ast(ast)


@router.post("/float-asts/parse", status_code=201)
def parse_text_endpoint(payload: ParseTextRequest, storage: DocumentStorage = Depends(get_storage)):
    """
    Parse posted conversation text directly (no stored conversation needed).
    """
    options = payload.model_dump(exclude={"title", "content"})
    ast = parse_conversation_to_float_ast(payload.content, payload.title, **options)
    document = dump_float_ast(ast)
    storage.save_float_ast(ast.id, document)
    return document


@router.get("/float-asts/{ast_id}")
def get_float_ast_endpoint(ast_id: str, storage: DocumentStorage = Depends(get_storage)):
    return dump_float_ast(_load_document(storage, ast_id))


@router.post("/float-asts/{ast_id}/query")
def query_float_ast_endpoint(
    ast_id: str,
    query: Dict[str, Any] = Body(default_factory=dict),
    storage: DocumentStorage = Depends(get_storage),
):
    """
    Evaluate a FloatQL request. Invalid requests are rejected with 400.
    """
    return evaluate_query(_load_document(storage, ast_id), query)


@router.post("/float-asts/{ast_id}/extract-fragments", response_model=ExtractFragmentsResponse)
async def extract_fragments_endpoint(
    ast_id: str,
    payload: ExtractFragmentsRequest,
    storage: DocumentStorage = Depends(get_storage),
):
    """
    Extract fragments relevant to `query`.

    Oracle problems fall back to keyword matching and are never reported as errors.
    """
    ast = _load_document(storage, ast_id)
    fragments = await aextract_fragments(ast, payload.query, payload.max_fragments, where=payload.where)
    return ExtractFragmentsResponse(fragments=fragments)

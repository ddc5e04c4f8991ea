"""
Tests for the FloatAST API endpoints.
"""
from tests.mock_helpers import MEMORY_CHAT, SCENARIO_B


def _parse_text(client, content=MEMORY_CHAT, title="Memory design"):
    response = client.post("/float-asts/parse", json={"title": title, "content": content})
    assert response.status_code == 201
    return response.json()


def test_parse_stored_conversation(client, storage, event_log):
    storage.add_conversation("conv-1", "Help", SCENARIO_B)

    response = client.post("/conversations/conv-1/parse")

    assert response.status_code == 201
    document = response.json()
    assert document["version"] == "1.0"
    assert [n["role"] for n in document["nodes"]] == ["assistant", "human"]
    assert document["edges"][0]["type"] == "responds_to"
    assert storage.get_float_ast(document["id"]) == document


def test_parse_stored_conversation_with_options(client, storage, event_log):
    storage.add_conversation("conv-1", "Help", SCENARIO_B)

    response = client.post("/conversations/conv-1/parse", json={"source": "chatgpt", "tags": ["support"]})

    assert response.status_code == 201
    assert response.json()["metadata"]["source"] == "chatgpt"
    assert response.json()["metadata"]["tags"] == ["support"]


def test_parse_missing_conversation_is_404(client):
    response = client.post("/conversations/nope/parse")
    assert response.status_code == 404


def test_parse_text_and_read_back(client, event_log):
    document = _parse_text(client)

    response = client.get(f"/float-asts/{document['id']}")

    assert response.status_code == 200
    assert response.json() == document
    assert document["metadata"]["personas"] == ["User", "Assistant"]


def test_parse_text_rejects_bad_source(client):
    response = client.post("/float-asts/parse", json={"title": "x", "content": "a: b", "source": "myspace"})
    assert response.status_code == 422


def test_get_missing_document_is_404(client):
    assert client.get("/float-asts/ast-missing").status_code == 404


def test_corrupted_document_is_422(client, storage):
    storage.save_float_ast(
        "ast-bad",
        {
            "id": "ast-bad",
            "version": "1.0",
            "temporal": {"created": "2024-01-01T00:00:00Z"},
            "nodes": [{"id": "n0", "content": {"raw": "hi"}, "position": {"index": 0}}],
            "edges": [{"id": "e0", "type": "responds_to", "source": "n0", "target": "n9"}],
        },
    )

    response = client.get("/float-asts/ast-bad")

    assert response.status_code == 422
    issues = response.json()["issues"]
    assert issues[0]["path"] == "edges[0].target"
    assert issues[0]["entity_id"] == "e0"


def test_future_major_version_is_422(client, storage):
    storage.save_float_ast("ast-v2", {"id": "ast-v2", "version": "2.0", "temporal": {"created": "2024-01-01"}})
    response = client.get("/float-asts/ast-v2")
    assert response.status_code == 422
    assert response.json()["issues"][0]["path"] == "version"


def test_query_endpoint(client, event_log):
    document = _parse_text(client)

    response = client.post(
        f"/float-asts/{document['id']}/query",
        json={"select": {"nodes": ["id", "role"]}, "where": {"role": "assistant"}, "aggregate": {"count": True}},
    )

    assert response.status_code == 200
    body = response.json()
    assert [n["role"] for n in body["nodes"]] == ["assistant"] * 3
    assert body["aggregate"]["count"] == {"nodes": 3}


def test_query_transform_endpoint(client, event_log):
    document = _parse_text(client)

    response = client.post(f"/float-asts/{document['id']}/query", json={"transform": {"target": "microsite"}})

    assert response.json() == {"target": "microsite", "options": {}}


def test_invalid_query_is_400(client, event_log):
    document = _parse_text(client)

    response = client.post(f"/float-asts/{document['id']}/query", json={"where": {"colour": "red"}})

    assert response.status_code == 400
    assert response.json()["problems"] == ["unknown field 'where.colour'"]


def test_extract_fragments_endpoint_falls_back(client, event_log):
    document = _parse_text(client)

    response = client.post(
        f"/float-asts/{document['id']}/extract-fragments", json={"query": "sqlite", "maxFragments": 10}
    )

    assert response.status_code == 200
    fragments = response.json()["fragments"]
    assert len(fragments) == 2
    assert all(f["category"] == "General" for f in fragments)


def test_extract_fragments_with_where(client, event_log):
    document = _parse_text(client)

    response = client.post(
        f"/float-asts/{document['id']}/extract-fragments",
        json={"query": "summary", "max_fragments": 5, "where": {"role": "assistant"}},
    )

    assert response.status_code == 200
    assert len(response.json()["fragments"]) == 3


def test_extract_fragments_requires_query(client, event_log):
    document = _parse_text(client)
    response = client.post(f"/float-asts/{document['id']}/extract-fragments", json={"maxFragments": 3})
    assert response.status_code == 422


def test_extract_fragments_missing_document(client):
    response = client.post("/float-asts/ast-missing/extract-fragments", json={"query": "x"})
    assert response.status_code == 404

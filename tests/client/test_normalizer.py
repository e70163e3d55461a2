import copy
import json

import httpx

from graphgate.client.normalizer import (
    ResponseKind,
    normalize,
    normalize_response,
    strip_metadata,
)


class TestStripMetadata:
    def test_removes_metadata_except_pagination_keys(self):
        # Arrange
        tree = {
            "@odata.context": "https://graph.microsoft.com/v1.0/$metadata#users",
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=x",
            "@odata.count": 12,
            "value": [
                {"@odata.etag": 'W/"1"', "@odata.type": "#user", "id": "1"},
                {"id": "2", "manager": {"@odata.id": "users/3", "id": "3"}},
            ],
        }

        # Act
        stripped = strip_metadata(tree)

        # Assert
        assert stripped == {
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=x",
            "@odata.count": 12,
            "value": [{"id": "1"}, {"id": "2", "manager": {"id": "3"}}],
        }

    def test_input_tree_is_not_mutated(self):
        # Arrange
        tree = {"@odata.context": "ctx", "value": [{"@odata.etag": "e", "id": "1"}]}
        original = copy.deepcopy(tree)

        # Act
        strip_metadata(tree)

        # Assert
        assert tree == original


class TestNormalize:
    def test_json_body_is_parsed_and_stripped(self):
        # Act
        result = normalize(
            200,
            "application/json; odata.metadata=minimal",
            b'{"@odata.context": "ctx", "displayName": "Ada"}',
        )

        # Assert
        assert result.kind is ResponseKind.JSON
        assert result.data == {"displayName": "Ada"}

    def test_raw_json_keeps_metadata(self):
        # Act
        result = normalize(200, "application/json", b'{"@odata.context": "ctx"}', raw=True)

        # Assert
        assert result.data == {"@odata.context": "ctx"}

    def test_no_content_renders_success_message(self):
        # Act
        result = normalize(204, None, b"")

        # Assert
        assert result.kind is ResponseKind.EMPTY
        assert json.loads(result.to_text()) == {"message": "Operation completed successfully"}

    def test_empty_200_is_empty(self):
        assert normalize(200, "application/json", b"").kind is ResponseKind.EMPTY

    def test_text_body_is_returned_as_text(self):
        # Act
        result = normalize(200, "text/csv", b"a,b\n1,2\n")

        # Assert
        assert result.kind is ResponseKind.TEXT
        assert result.to_text() == "a,b\n1,2\n"

    def test_invalid_json_falls_back_to_text(self):
        # Act
        result = normalize(200, "application/json", b"not json")

        # Assert
        assert result.kind is ResponseKind.TEXT
        assert result.data == "not json"

    def test_binary_body_becomes_descriptor(self):
        # Act
        result = normalize(200, "application/pdf", b"%PDF-1.7 \x00\x01")

        # Assert
        assert result.kind is ResponseKind.BINARY
        assert result.data == {
            "message": "Binary or non-JSON content received",
            "contentType": "application/pdf",
            "contentLength": 11,
        }

    def test_next_link_exposed_for_pagination(self):
        # Arrange
        response = httpx.Response(
            200,
            json={"value": [], "@odata.nextLink": "https://next"},
        )

        # Act
        result = normalize_response(response)

        # Assert
        assert result.next_link == "https://next"

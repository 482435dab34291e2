from __future__ import annotations

_ID_OR_NUMBER: dict = {"type": ["string", "integer", "number", "null"]}

ANSWER_RECORD_JSON_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "question_id": _ID_OR_NUMBER,
        "questionId": _ID_OR_NUMBER,
        "number": _ID_OR_NUMBER,
        "question_number": _ID_OR_NUMBER,
        "selected_option_id": _ID_OR_NUMBER,
        "selectedOptionId": _ID_OR_NUMBER,
        "selectedOption": _ID_OR_NUMBER,
        "selected_option": _ID_OR_NUMBER,
    },
}

KEYED_PAYLOAD_JSON_SCHEMA: dict = {
    "type": "object",
    "additionalProperties": _ID_OR_NUMBER,
}

import json
from unittest.mock import MagicMock


def fake_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = body
    response.text = json.dumps(body)
    return response

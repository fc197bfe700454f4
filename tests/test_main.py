import json

import pytest

from main import load_trade_parser


def test_parser_not_configured():
    assert load_trade_parser(None) is None
    assert load_trade_parser("") is None


def test_parser_loaded_from_module():
    assert load_trade_parser("json:loads") is json.loads


def test_parser_target_needs_function():
    with pytest.raises(RuntimeError):
        load_trade_parser("json")

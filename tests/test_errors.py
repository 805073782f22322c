import pytest

from ananasrpc.errors import CATEGORY, ErrorCode, RpcError, error_message


def test_message_for_ok():
    assert error_message(ErrorCode.NONE) == "ananas.error:OK"


def test_message_for_timeout():
    assert error_message(ErrorCode.TIMEOUT) == "ananas.error:Timeout"


def test_message_accepts_plain_int():
    assert error_message(int(ErrorCode.DECODE_FAIL)) == "ananas.error:DecodeFail"


@pytest.mark.parametrize("code", list(ErrorCode))
def test_every_code_has_category_prefix(code):
    text = error_message(code)
    assert text.startswith(CATEGORY + ":")
    assert text != "Bad ananas.rpc error code"


def test_messages_are_distinct():
    messages = {error_message(code) for code in ErrorCode}
    assert len(messages) == len(ErrorCode)


def test_unknown_code_message():
    assert error_message(999) == "Bad ananas.rpc error code"


def test_error_keeps_code_and_message():
    err = RpcError(ErrorCode.NO_SUCH_SERVICE, "test.Service")
    assert err.code is ErrorCode.NO_SUCH_SERVICE
    assert err.message == "test.Service"
    assert str(err).startswith("test.Service")
    assert str(err).endswith(error_message(ErrorCode.NO_SUCH_SERVICE))


def test_error_without_message_is_code_text():
    err = RpcError(ErrorCode.ENCODE_FAIL)
    assert str(err) == error_message(ErrorCode.ENCODE_FAIL)


def test_int_code_resolves_to_enum():
    err = RpcError(int(ErrorCode.CONNECT_REFUSED))
    assert err.code is ErrorCode.CONNECT_REFUSED


def test_unknown_int_code_is_kept():
    err = RpcError(999, "odd")
    assert err.code == 999
    assert str(err).endswith("Bad ananas.rpc error code")


def test_error_can_be_raised_and_caught():
    err = RpcError(ErrorCode.TOO_LONG_FRAME, "abnormal totalLen:1")
    assert err.category == "ananas.error"
    assert err.message == "abnormal totalLen:1"
    with pytest.raises(RpcError) as info:
        raise err
    assert info.value is err
    assert info.value.code is ErrorCode.TOO_LONG_FRAME
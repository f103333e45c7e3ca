import pytest

from otpgate.service.errors import ValidationError
from otpgate.service.identifiers import infer_kind, validate_identifier
from otpgate.storage.models import IdentifierKind


@pytest.mark.parametrize(
    "identifier",
    ["+84912345678", "0912345678", "+84 912345678", "+1-4155552671", "912345678"],
)
def test_valid_phones(identifier):
    assert validate_identifier(identifier) == (identifier, IdentifierKind.PHONE)


@pytest.mark.parametrize("identifier", ["user@example.com", "first.last+tag@mail.example.vn"])
def test_valid_emails(identifier):
    assert validate_identifier(identifier) == (identifier, IdentifierKind.EMAIL)


@pytest.mark.parametrize(
    "identifier",
    ["", "   ", "12345", "+84abc45678", "user@localhost", "@example.com", "a@b@c.com"],
)
def test_invalid_identifiers(identifier):
    with pytest.raises(ValidationError) as excinfo:
        validate_identifier(identifier)
    assert excinfo.value.status_code == 400


def test_whitespace_is_stripped():
    assert validate_identifier("  user@example.com ") == ("user@example.com", IdentifierKind.EMAIL)


def test_explicit_kind_overrides_inference():
    with pytest.raises(ValidationError):
        validate_identifier("user@example.com", IdentifierKind.PHONE)


def test_infer_kind():
    assert infer_kind("a@b.co") == IdentifierKind.EMAIL
    assert infer_kind("0912345678") == IdentifierKind.PHONE


def test_non_string_rejected():
    with pytest.raises(ValidationError):
        validate_identifier(12345)

"""Tests for phenohub.validation."""

import pytest

from phenohub.validation import (
  MAX_REPORT_IMAGES,
  Invalid,
  Valid,
  parse_rating,
  parse_status_filter,
  resolve_author_handle,
  validate_comment,
  validate_credentials,
  validate_moderation,
  validate_registration,
  validate_report_submission,
  validate_user_changes,
)


def _submission(**overrides):
  payload = {
    "title": "Papaya Punch run",
    "cultivar_slug": "papaya-punch",
    "provider_slug": "green-cuts",
    "summary": "Rooted quickly, strong stem.",
  }
  payload.update(overrides)
  return payload


@pytest.mark.parametrize(
  "value, expected",
  [(4, 4.0), ("3.456", 3.46), (1, 1.0), (5, 5.0), (0, 0.0), (6, 0.0), ("abc", 0.0), (None, 0.0), (True, 0.0)],
)
def test_parse_rating(value, expected):
  assert parse_rating(value) == expected


@pytest.mark.parametrize("payload", [None, [], "text", 42])
def test_non_object_payloads_are_invalid(payload):
  assert isinstance(validate_report_submission(payload), Invalid)
  assert isinstance(validate_registration(payload), Invalid)
  assert isinstance(validate_credentials(payload), Invalid)
  assert isinstance(validate_moderation(payload), Invalid)


def test_registration_normalises_fields():
  result = validate_registration({
    "email": " Grower@Example.COM ",
    "password": "longenough",
    "username": "  Grower ",
    "name": " Kim ",
  })
  assert isinstance(result, Valid)
  assert result.value == {
    "email": "grower@example.com",
    "password": "longenough",
    "username": "grower",
    "name": "Kim",
  }


def test_registration_reports_every_problem():
  result = validate_registration({"email": "nope", "password": "short"})
  assert not result.ok
  assert len(result.reasons) == 2
  assert "Password" in result.message


def test_credentials_require_both_fields():
  assert not validate_credentials({"email": "a@b.c"}).ok
  assert validate_credentials({"email": "A@B.C", "password": "x"}).value["email"] == "a@b.c"


def test_report_requires_mandatory_fields():
  result = validate_report_submission({"title": "Only a title"})
  assert not result.ok
  assert "cultivar_slug" in result.message
  assert "summary" in result.message


def test_report_overall_falls_back_to_mean_of_sub_ratings():
  result = validate_report_submission(_submission(ratings={"growth": 4, "stability": 5, "shipping": 3, "care": 9}))
  assert result.ok
  value = result.value
  assert value["overall"] == 4.0
  assert value["vitality"] == 4.0
  assert value["shipping"] == 3.0
  assert value["care"] == 0.0


def test_report_explicit_overall_wins():
  result = validate_report_submission(_submission(ratings={"growth": 2, "overall": 4.5}))
  assert result.value["overall"] == 4.5


def test_report_without_ratings_has_zero_overall():
  assert validate_report_submission(_submission()).value["overall"] == 0.0


def test_report_images_are_capped_and_cleaned():
  images = ["https://tmpfiles.org/%d/a.jpg" % index for index in range(12)]
  images[1] = "   "
  images[2] = {"data": "base64"}
  result = validate_report_submission(_submission(images=images))
  assert len(result.value["images"]) == MAX_REPORT_IMAGES - 2
  assert result.value["images"][0] == "https://tmpfiles.org/0/a.jpg"


def test_report_excerpt_is_truncated():
  result = validate_report_submission(_submission(summary="x" * 500))
  assert len(result.value["excerpt"]) == 200


def test_author_handle_resolution():
  claims = {"email": "kim@example.com", "name": "Kim"}
  assert resolve_author_handle("", True, claims) == "Anonym"
  assert resolve_author_handle("Nick", True, claims) == "Nick"
  assert resolve_author_handle("", False, claims) == "Kim"
  assert resolve_author_handle("", False, {"email": "kim@example.com"}) == "kim"
  assert resolve_author_handle("", False, {"username": "kimgrows", "name": "Kim"}) == "kimgrows"
  assert resolve_author_handle("", False, None) == "Community"


def test_moderation_accepts_any_case():
  result = validate_moderation({"status": "published", "review_note": "Looks good"})
  assert result.value == {"status": "PUBLISHED", "review_note": "Looks good"}
  assert validate_moderation({"status": "REJECTED", "review_note": 5}).value["review_note"] is None
  assert not validate_moderation({"status": "ARCHIVED"}).ok


@pytest.mark.parametrize(
  "value, expected",
  [(None, None), ("", None), ("all", None), ("bogus", None), ("pending", "PENDING"), ("PUBLISHED", "PUBLISHED")],
)
def test_parse_status_filter(value, expected):
  assert parse_status_filter(value) == expected


def test_comment_length_limits():
  assert validate_comment({"body": "  ok  "}).ok is False
  assert validate_comment({"body": "x" * 2001}).ok is False
  assert validate_comment({"body": 42}).ok is False
  assert validate_comment({"body": "  Looks healthy  "}).value == {"body": "Looks healthy"}


def test_user_changes_accept_known_roles_and_statuses():
  assert validate_user_changes({"role": "VERIFIED"}).value == {"role": "VERIFIED"}
  assert validate_user_changes({"status": "INVITED", "plan": "pro"}).value == {"status": "INVITED"}
  assert not validate_user_changes({}).ok
  result = validate_user_changes({"role": "admin", "status": "GONE"})
  assert len(result.reasons) == 2

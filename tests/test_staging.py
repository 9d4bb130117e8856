"""
Tests for the Staging Store.

Covers deduplication on insert, the staging state machine, confidence
routing and promotion into the catalog.
"""

import pytest
from unittest.mock import MagicMock

from ingestion.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from ingestion.models import BatchSource, CatalogRecord, IngestionBatch, StagedEntity, StagingKeyLock, StagingStatus
from ingestion.payloads import payload_from_dict
from ingestion.services.confidence import ConfidenceFactor, score_confidence
from ingestion.services.staging import StagingStore, can_transition, dedup_keys, merge_flags


def confidence(value):
    return score_confidence([ConfidenceFactor("completeness", value)])


class TestHelpers:
    def test_merge_flags_keeps_order_and_drops_duplicates(self):
        assert merge_flags(["a", "b"], ["b", "c", ""]) == ["a", "b", "c"]

    def test_promoted_is_terminal(self):
        for target in StagingStatus.values:
            assert not can_transition(StagingStatus.PROMOTED, target)

    def test_rejected_cannot_be_approved_directly(self):
        assert not can_transition(StagingStatus.REJECTED, StagingStatus.APPROVED)
        assert can_transition(StagingStatus.REJECTED, StagingStatus.NEEDS_REVIEW)

    def test_dedup_keys_ignore_the_run(self):
        partner = MagicMock(pk="p-1")

        assert dedup_keys("venue", None, "ubereats-4711") == ["ext:venue:-:ubereats-4711"]
        assert dedup_keys("venue", partner, "v-1") == ["ext:venue:p-1:v-1"]
        assert dedup_keys("venue", None, "") == []

    def test_availability_also_locks_venue_and_sku(self):
        keys = dedup_keys("availability", None, "a-1", production_venue_id="cat-1", product_sku="planted-kebab")

        assert keys == ["ext:availability:-:a-1", "sku:cat-1:planted-kebab"]


@pytest.mark.django_db
class TestStage:
    """Tests for insert and deduplication."""

    def test_stage_creates_pending_entity(self, partner, venue_payload):
        store = StagingStore()

        entity, created = store.stage("venue", venue_payload, partner=partner, external_id="v-1")

        assert created is True
        assert entity.status == StagingStatus.PENDING
        assert entity.name == "Tibits Zurich"
        assert entity.country == "CH"
        assert entity.confidence_score == 0.0

    def test_flags_on_insert_force_review(self, venue_payload):
        store = StagingStore()

        entity, _ = store.stage("venue", venue_payload, flags=["possible_duplicate"])

        assert entity.status == StagingStatus.NEEDS_REVIEW
        assert entity.flags == ["possible_duplicate"]

    def test_same_external_id_refreshes_open_record(self, partner, venue_payload):
        store = StagingStore()
        first, _ = store.stage("venue", venue_payload, partner=partner, external_id="v-1", confidence=confidence(40))

        venue_payload["name"] = "Tibits Zurich Seefeld"
        second, created = store.stage(
            "venue", venue_payload, partner=partner, external_id="v-1",
            confidence=confidence(90), flags=["name_changed"],
        )

        assert created is False
        assert second.id == first.id
        assert second.name == "Tibits Zurich Seefeld"
        assert second.confidence_score == 90.0
        assert second.flags == ["name_changed"]
        assert second.status == StagingStatus.NEEDS_REVIEW
        assert StagedEntity.objects.count() == 1

    def test_closed_record_is_not_reused(self, partner, venue_payload):
        store = StagingStore()
        first, _ = store.stage("venue", venue_payload, partner=partner, external_id="v-1")
        store.reject(first.id, reviewer="reviewer@example.com", reason="closed down")

        second, created = store.stage("venue", venue_payload, partner=partner, external_id="v-1")

        assert created is True
        assert second.id != first.id

    def test_availability_dedups_on_venue_and_sku(self):
        store = StagingStore()
        data = {"product_sku": "planted-kebab", "in_stock": True}

        first, _ = store.stage("availability", data, production_venue_id="cat-venue-1")
        second, created = store.stage(
            "availability", {"product_sku": "planted-kebab", "in_stock": False},
            production_venue_id="cat-venue-1",
        )

        assert created is False
        assert second.id == first.id
        assert second.payload["in_stock"] is False

    def test_same_external_id_from_two_runs_is_one_record(self, services, venue_payload):
        store = StagingStore()
        first_run, second_run = services.runs.create(), services.runs.create()

        first, _ = store.stage("venue", venue_payload, external_id="ubereats-4711", discovery_run=first_run)
        second, created = store.stage("venue", venue_payload, external_id="ubereats-4711", discovery_run=second_run)

        assert created is False
        assert second.id == first.id
        assert second.discovery_run_id == second_run.id
        assert StagingKeyLock.objects.filter(key="ext:venue:-:ubereats-4711").count() == 1

    def test_candidates_without_keys_take_no_lock(self, venue_payload):
        StagingStore().stage("venue", venue_payload)

        assert not StagingKeyLock.objects.exists()

    def test_payload_type_must_match(self, dish_payload):
        store = StagingStore()
        payload = payload_from_dict("dish", dish_payload)

        with pytest.raises(ValidationError):
            store.stage("venue", payload)

    def test_invalid_payload_rejected(self):
        store = StagingStore()

        with pytest.raises(ValidationError):
            store.stage("dish", {"name": "No SKU", "price": {"amount": 10, "currency": "CHF"}})
        assert not StagedEntity.objects.exists()


@pytest.mark.django_db
class TestStateMachine:
    """Tests for review transitions and flags."""

    def test_approve_records_review(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        approved = store.approve(entity.id, reviewer="reviewer@example.com", notes="checked")

        assert approved.status == StagingStatus.APPROVED
        assert approved.reviewed_by == "reviewer@example.com"
        assert approved.review_decision == "approved"
        assert approved.review_notes == "checked"
        assert approved.reviewed_at is not None

    def test_reviewer_required(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        with pytest.raises(ValidationError):
            store.approve(entity.id, reviewer="")

    def test_cannot_approve_twice(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.approve(entity.id, reviewer="a@example.com")

        with pytest.raises(InvalidTransitionError):
            store.approve(entity.id, reviewer="b@example.com")

    def test_approve_missing_entity(self):
        store = StagingStore()

        with pytest.raises(NotFoundError):
            store.approve("00000000-0000-0000-0000-000000000000", reviewer="a@example.com")

    def test_flag_reopens_approved_entity(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.approve(entity.id, reviewer="a@example.com")

        flagged = store.add_flag(entity.id, "address_mismatch")

        assert flagged.status == StagingStatus.NEEDS_REVIEW
        assert flagged.flags == ["address_mismatch"]
        assert store.approve(entity.id, reviewer="b@example.com").status == StagingStatus.APPROVED

    def test_flag_on_promoted_entity_is_noop(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.approve(entity.id, reviewer="a@example.com")
        store.promote(entity.id)

        unchanged = store.add_flag(entity.id, "late_flag")

        assert unchanged.status == StagingStatus.PROMOTED
        assert unchanged.flags == []

    def test_empty_flag_rejected(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        with pytest.raises(ValidationError):
            store.add_flag(entity.id, "")

    def test_decision_hooks_run_after_commit(self, venue_payload, django_capture_on_commit_callbacks):
        hook = MagicMock()
        store = StagingStore(decision_hooks=[hook])
        entity, _ = store.stage("venue", venue_payload)

        with django_capture_on_commit_callbacks(execute=True):
            store.reject(entity.id, reviewer="a@example.com", reason="not planted")

        hook.assert_called_once()
        args = hook.call_args[0]
        assert args[0].id == entity.id
        assert args[1:] == ("rejected", "a@example.com", False)

    def test_failing_hook_does_not_undo_decision(self, venue_payload, django_capture_on_commit_callbacks):
        hook = MagicMock(side_effect=RuntimeError("downstream down"))
        store = StagingStore(decision_hooks=[hook])
        entity, _ = store.stage("venue", venue_payload)

        with django_capture_on_commit_callbacks(execute=True):
            store.approve(entity.id, reviewer="a@example.com")

        entity.refresh_from_db()
        assert entity.status == StagingStatus.APPROVED


@pytest.mark.django_db
class TestRouteByConfidence:
    """Tests for automatic routing."""

    def test_high_score_auto_approves(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload, confidence=confidence(92))

        routed = store.route_by_confidence(entity.id)

        assert routed.status == StagingStatus.APPROVED
        assert routed.reviewed_by == "system:auto-route"

    def test_low_score_auto_rejects(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload, confidence=confidence(10))

        assert store.route_by_confidence(entity.id).status == StagingStatus.REJECTED

    def test_middle_score_needs_review(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload, confidence=confidence(60))

        assert store.route_by_confidence(entity.id).status == StagingStatus.NEEDS_REVIEW

    def test_partner_manual_review_blocks_auto_approve(self, partner, venue_payload):
        partner.requires_manual_review = True
        partner.save()
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload, partner=partner, confidence=confidence(99))

        assert store.route_by_confidence(entity.id).status == StagingStatus.NEEDS_REVIEW

    def test_only_pending_or_validating_can_be_routed(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload, flags=["manual"])

        with pytest.raises(InvalidTransitionError):
            store.route_by_confidence(entity.id)

    def test_validating_entity_can_be_routed(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.begin_validation(entity.id)
        store.update_confidence(entity.id, confidence(95))

        assert store.route_by_confidence(entity.id).status == StagingStatus.APPROVED


@pytest.mark.django_db
class TestPromotion:
    """Tests for promotion into the catalog."""

    def test_promote_mints_catalog_record(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.approve(entity.id, reviewer="a@example.com")

        promoted, record = store.promote(entity.id)

        assert promoted.status == StagingStatus.PROMOTED
        assert promoted.production_id == str(record.id)
        assert promoted.promoted_at is not None
        assert record.name == "Tibits Zurich"
        assert record.source_staged_entity_id == entity.id

    def test_promoting_venue_links_children(self, venue_payload, dish_payload):
        store = StagingStore()
        venue, _ = store.stage("venue", venue_payload)
        dish, _ = store.stage("dish", dish_payload, staged_venue=venue)
        store.approve(venue.id, reviewer="a@example.com")

        _, record = store.promote(venue.id)

        dish.refresh_from_db()
        assert dish.production_venue_id == str(record.id)

    def test_child_promoted_after_parent_inherits_venue(self, venue_payload, dish_payload):
        store = StagingStore()
        venue, _ = store.stage("venue", venue_payload)
        dish, _ = store.stage("dish", dish_payload, staged_venue=venue)
        store.approve(venue.id, reviewer="a@example.com")
        _, venue_record = store.promote(venue.id)
        store.approve(dish.id, reviewer="a@example.com")

        _, dish_record = store.promote(dish.id)

        assert dish_record.production_venue_id == str(venue_record.id)

    def test_unapproved_entity_cannot_be_promoted(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        with pytest.raises(InvalidTransitionError):
            store.promote(entity.id)
        assert not CatalogRecord.objects.exists()

    def test_mark_promoted_requires_production_id(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)
        store.approve(entity.id, reviewer="a@example.com")

        with pytest.raises(ValidationError):
            store.mark_promoted(entity.id, "")


@pytest.mark.django_db
class TestEditsAndReads:
    """Tests for corrections, chain assignment and queries."""

    def test_correct_payload_revalidates(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        corrected = store.correct_payload(entity.id, {"name": "Tibits Seefeld"})
        assert corrected.name == "Tibits Seefeld"

        with pytest.raises(ValidationError):
            store.correct_payload(entity.id, {"venue_type": "spaceship"})

    def test_assign_chain_updates_payload(self, venue_payload):
        store = StagingStore()
        entity, _ = store.stage("venue", venue_payload)

        updated = store.assign_chain(entity.id, "tibits")

        assert updated.chain_id == "tibits"
        assert updated.payload["chain_id"] == "tibits"

    def test_geocoding_only_for_venues(self, dish_payload):
        store = StagingStore()
        dish, _ = store.stage("dish", dish_payload)

        with pytest.raises(ValidationError):
            store.update_geocoding(dish.id, {"confidence": 90})

    def test_query_filters_and_pages(self, venue_payload, dish_payload):
        store = StagingStore()
        for i in range(3):
            venue_payload["name"] = f"Tibits {i}"
            store.stage("venue", venue_payload)
        store.stage("dish", dish_payload)

        page = store.query(entity_type="venue", limit=2)

        assert page.total == 3
        assert len(page.items) == 2
        assert page.has_more is True
        assert store.query(search="tibits 1").total == 1

    def test_count_by_status_zero_filled(self, venue_payload):
        store = StagingStore()
        store.stage("venue", venue_payload)

        counts = store.count_by_status()

        assert counts["pending"] == 1
        assert counts["promoted"] == 0
        assert set(counts) == set(StagingStatus.values)

    def test_delete_by_batch_keeps_promoted(self, venue_payload, dish_payload):
        store = StagingStore()
        batch = IngestionBatch.objects.create(source=BatchSource.MANUAL)
        venue, _ = store.stage("venue", venue_payload, batch=batch)
        store.stage("dish", dish_payload, batch=batch)
        store.approve(venue.id, reviewer="a@example.com")
        store.promote(venue.id)

        deleted = store.delete_by_batch(batch.id)

        assert deleted == 1
        assert [e.id for e in store.get_by_batch(batch.id)] == [venue.id]

"""Tests for concurrent claims and pickup scans of the same listing."""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlmodel import Session

from app.db.db import create_db_engine, init_db
from app.models.listing import ListingStatus
from app.models.user import Role, User
from app.services import lifecycle, listing_store
from app.utils.clock import utcnow
from app.utils.errors import ClaimTokenUsedError, FoodShareError, ListingUnavailableError
from tests.utils.factories import make_listing, make_user

CONTENDERS = 8


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'races.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


def _race(attempts):
    """Run every attempt on its own thread, released together; returns results and domain errors."""
    barrier = threading.Barrier(len(attempts))

    def run(attempt):
        barrier.wait()
        try:
            return attempt()
        except FoodShareError as e:
            return e

    with ThreadPoolExecutor(max_workers=len(attempts)) as pool:
        return list(pool.map(run, attempts))


@pytest.mark.unit
def test_rival_claim_between_read_and_write(session, donor, receiver, settings):
    listing = make_listing(session, donor)
    rival = make_user(session, Role.RECEIVER, name="Rival")

    def rival_claims_first(s, length):
        listing_store.update_status(s, listing.id, ListingStatus.PUBLISHED, ListingStatus.CLAIMED, claimed_by=rival.id)
        return lifecycle.mint_token(length)

    with patch.object(lifecycle, "_unique_code", side_effect=rival_claims_first):
        with pytest.raises(ListingUnavailableError):
            lifecycle.claim_listing(session, listing.id, receiver, settings)

    assert listing_store.get(session, listing.id).claimed_by == rival.id


@pytest.mark.unit
def test_sweep_between_read_and_claim(session, donor, receiver, settings):
    listing = make_listing(session, donor)

    def swept_first(s, length):
        listing_store.update_status(s, listing.id, ListingStatus.PUBLISHED, ListingStatus.EXPIRED)
        return lifecycle.mint_token(length)

    with patch.object(lifecycle, "_unique_code", side_effect=swept_first):
        with pytest.raises(ListingUnavailableError):
            lifecycle.claim_listing(session, listing.id, receiver, settings)

    stored = listing_store.get(session, listing.id)
    assert stored.status == ListingStatus.EXPIRED
    assert stored.claimed_by is None


@pytest.mark.unit
def test_second_scan_between_check_and_consume(session, donor, receiver, settings):
    listing = make_listing(session, donor)
    claim = lifecycle.claim_listing(session, listing.id, receiver, settings)

    def other_scan_first(quantity, unit, multipliers):
        assert listing_store.consume_token(session, listing.id, claim.qr_code, donor.id, utcnow(), 120)
        return 120

    with patch.object(lifecycle, "compute_reward", side_effect=other_scan_first):
        with pytest.raises(ClaimTokenUsedError):
            lifecycle.verify_pickup(session, claim.qr_code, donor, settings)

    stored = listing_store.get(session, listing.id)
    assert stored.status == ListingStatus.COMPLETED
    assert stored.reward_tokens == 120


@pytest.mark.unit
def test_expiry_between_check_and_consume(session, donor, receiver, settings):
    listing = make_listing(session, donor)
    claim = lifecycle.claim_listing(session, listing.id, receiver, settings)

    def expired_first(quantity, unit, multipliers):
        listing_store.update_status(session, listing.id, ListingStatus.CLAIMED, ListingStatus.EXPIRED)
        return 120

    with patch.object(lifecycle, "compute_reward", side_effect=expired_first):
        with pytest.raises(ListingUnavailableError):
            lifecycle.verify_pickup(session, claim.qr_code, donor, settings)

    assert listing_store.get(session, listing.id).qr_verified is False


@pytest.mark.unit
def test_concurrent_claims_have_one_winner(file_engine, settings):
    with Session(file_engine) as s:
        donor = make_user(s, Role.DONOR, name="Hostel Kitchen")
        listing_id = make_listing(s, donor).id
        receiver_ids = [make_user(s, Role.RECEIVER, name=f"Student {i}").id for i in range(CONTENDERS)]

    def claim_as(receiver_id):
        def attempt():
            with Session(file_engine) as s:
                result = lifecycle.claim_listing(s, listing_id, s.get(User, receiver_id), settings)
                return result.listing.claimed_by
        return attempt

    outcomes = _race([claim_as(rid) for rid in receiver_ids])

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert all(isinstance(e, ListingUnavailableError) for e in losers)

    with Session(file_engine) as s:
        stored = listing_store.get(s, listing_id)
        assert stored.status == ListingStatus.CLAIMED
        assert stored.claimed_by == winners[0]


@pytest.mark.unit
def test_concurrent_scans_reward_once(file_engine, settings):
    with Session(file_engine) as s:
        donor = make_user(s, Role.DONOR, name="Hostel Kitchen")
        receiver = make_user(s, Role.RECEIVER, name="Student")
        listing_id = make_listing(s, donor).id
        code = lifecycle.claim_listing(s, listing_id, receiver, settings).qr_code
        donor_id = donor.id

    def scan():
        with Session(file_engine) as s:
            return lifecycle.verify_pickup(s, code, s.get(User, donor_id), settings).tokens_earned

    outcomes = _race([scan] * CONTENDERS)

    rewards = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert rewards == [120]
    assert all(isinstance(e, ClaimTokenUsedError) for e in losers)

    with Session(file_engine) as s:
        stored = listing_store.get(s, listing_id)
        assert stored.status == ListingStatus.COMPLETED
        assert stored.qr_verified_by == donor_id

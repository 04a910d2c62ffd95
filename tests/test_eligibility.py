import unittest

from helpers import MarketTestCase, PICKUP, ride_payload

from ridemarket.errors import NotEligible
from ridemarket.models.parcel import ParcelRequest
from ridemarket.models.provider import DriverProfile, DriverServiceType, ServiceProviderProfile
from ridemarket.models.ride import RideRequest
from ridemarket.models.service import Service, ServiceRequest
from ridemarket.services.discovery import open_requests_for_driver, nearby_drivers
from ridemarket.services.eligibility import is_eligible, ensure_eligible, eligibility_problem
from ridemarket.services.requests import create_ride_request


def _driver(**kw):
    data = dict(service_type=DriverServiceType.RIDE, is_verified=True, is_online=True)
    data.update(kw)
    return DriverProfile(**data)


class DriverEligibilityTests(unittest.TestCase):
    def test_verified_online_ride_driver(self):
        self.assertTrue(is_eligible(_driver(), RideRequest()))

    def test_unverified_or_offline(self):
        self.assertFalse(is_eligible(_driver(is_verified=False), RideRequest()))
        self.assertFalse(is_eligible(_driver(is_online=False), RideRequest()))

    def test_service_type_must_match_kind(self):
        self.assertFalse(is_eligible(_driver(service_type=DriverServiceType.PARCEL), RideRequest()))
        self.assertTrue(is_eligible(_driver(service_type=DriverServiceType.PARCEL), ParcelRequest()))

    def test_missing_profile(self):
        self.assertIsNotNone(eligibility_problem(None, RideRequest()))
        with self.assertRaises(NotEligible):
            ensure_eligible(None, RideRequest())


class ServiceProviderEligibilityTests(unittest.TestCase):
    def setUp(self):
        self.plumbing = Service(id=1, name="Сантехник")
        self.cleaning = Service(id=2, name="Уборка")

    def test_registered_for_service(self):
        master = ServiceProviderProfile(is_verified=True, services=[self.plumbing])
        self.assertTrue(is_eligible(master, ServiceRequest(service_id=1)))
        self.assertFalse(is_eligible(master, ServiceRequest(service_id=2)))

    def test_online_not_required_but_verification_is(self):
        master = ServiceProviderProfile(is_verified=True, is_online=False, services=[self.plumbing])
        self.assertTrue(is_eligible(master, ServiceRequest(service_id=1)))
        master.is_verified = False
        self.assertFalse(is_eligible(master, ServiceRequest(service_id=1)))

    def test_driver_cannot_take_service(self):
        self.assertFalse(is_eligible(_driver(), ServiceRequest(service_id=1)))
        master = ServiceProviderProfile(is_verified=True, services=[self.plumbing])
        self.assertFalse(is_eligible(master, RideRequest()))


class DiscoveryTests(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make.user()
        self.req = create_ride_request(self.db, self.as_principal(self.client), ride_payload())

    def test_driver_within_radius_sees_request(self):
        u, _ = self.make.driver(location=(PICKUP[0] + 0.02, PICKUP[1]))
        items = open_requests_for_driver(self.db, self.as_principal(u))
        self.assertEqual([i["id"] for i in items], [self.req.id])
        self.assertLess(items[0]["distance_to_pickup_km"], 5.0)

    def test_far_driver_does_not_see_request(self):
        u, _ = self.make.driver(location=(PICKUP[0] + 0.1, PICKUP[1]))
        self.assertEqual(open_requests_for_driver(self.db, self.as_principal(u)), [])

    def test_driver_without_location_or_offline(self):
        u1, _ = self.make.driver(location=None)
        u2, _ = self.make.driver(online=False)
        self.assertEqual(open_requests_for_driver(self.db, self.as_principal(u1)), [])
        self.assertEqual(open_requests_for_driver(self.db, self.as_principal(u2)), [])

    def test_old_nearby_request_survives_many_newer_far_ones(self):
        # 111 км севернее, все новее self.req
        for _ in range(8):
            other = self.make.user()
            create_ride_request(
                self.db, self.as_principal(other),
                ride_payload(pickup_lat=PICKUP[0] + 1.0),
            )
        u, _ = self.make.driver(location=(PICKUP[0] + 0.01, PICKUP[1]))
        items = open_requests_for_driver(self.db, self.as_principal(u), limit=5)
        self.assertEqual([i["id"] for i in items], [self.req.id])

    def test_limit_keeps_nearest(self):
        near = create_ride_request(
            self.db, self.as_principal(self.make.user()),
            ride_payload(pickup_lat=PICKUP[0] + 0.005),
        )
        u, _ = self.make.driver(location=(PICKUP[0] + 0.006, PICKUP[1]))
        items = open_requests_for_driver(self.db, self.as_principal(u), limit=1)
        self.assertEqual([i["id"] for i in items], [near.id])

    def test_nearby_drivers_sorted(self):
        far_u, _ = self.make.driver(location=(PICKUP[0] + 0.03, PICKUP[1]))
        near_u, _ = self.make.driver(location=(PICKUP[0] + 0.01, PICKUP[1]))
        self.make.driver(location=None)
        found = nearby_drivers(self.db, PICKUP[0], PICKUP[1], 5.0)
        self.assertEqual([p.user_id for p, _ in found], [near_u.id, far_u.id])


if __name__ == "__main__":
    unittest.main()

import threading
import unittest
from pathlib import Path

from mrfparquet.filters import Counter, ProviderReferenceFilter, ServiceAllowList

DATA = Path(__file__).parents[2] / 'data'


class TestServiceAllowList(unittest.TestCase):

    def test_from_csv_skips_header(self):
        services = ServiceAllowList.from_csv(DATA / 'services.csv')

        self.assertEqual(len(services), 2)
        self.assertIn('99213', services)
        self.assertIn('J1234', services)
        self.assertNotIn('code', services)

    def test_only_cpt_and_hcpcs_are_allowed(self):
        services = ServiceAllowList(['99213'])

        self.assertTrue(services.allows('CPT', '99213'))
        self.assertTrue(services.allows('HCPCS', '99213'))
        self.assertFalse(services.allows('MS-DRG', '99213'))
        self.assertFalse(services.allows('CPT', '99214'))


class TestProviderReferenceFilter(unittest.TestCase):

    def test_concurrent_adds(self):
        providers = ProviderReferenceFilter()

        def add(start):
            for i in range(start, start + 1000):
                providers.add(str(i))

        threads = [threading.Thread(target=add, args=(i * 1000,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(providers), 8000)
        self.assertIn('7999', providers)

    def test_duplicates_count_once(self):
        providers = ProviderReferenceFilter()
        providers.add('1', '2')
        providers.add('2', '3')

        self.assertEqual(len(providers), 3)

    def test_frozen_filter_rejects_adds(self):
        providers = ProviderReferenceFilter(['A'])
        providers.freeze()

        self.assertTrue(providers.frozen)
        self.assertIn('A', providers)
        with self.assertRaises(RuntimeError):
            providers.add('B')
        self.assertNotIn('B', providers)


class TestCounter(unittest.TestCase):

    def test_concurrent_increments(self):
        counter = Counter()

        def increment():
            for _ in range(10_000):
                counter.add()

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(counter.value, 40_000)

import gzip
import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path

from mrfparquet.exceptions import InvalidMRF
from mrfparquet.parse import parse
from mrfparquet.splitter import split_file
from mrfparquet.steps import new_parse_pipeline

DATA = Path(__file__).parents[2] / 'data'
MRF = DATA / 'mrf.json'
SERVICES = DATA / 'services.csv'


def read_lines(path):
    with open(path) as f:
        return [json.loads(line) for line in f]


class TestSplitFile(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.out_dir = os.path.join(self.tmp, 'shards')

    def tearDown(self):
        self._tmp.cleanup()

    def test_split(self):
        lines = split_file(MRF, self.out_dir)

        self.assertEqual(lines, {
            'provider_references_0000.jsonl': 2,
            'in_network_0000.jsonl': 2,
        })
        self.assertEqual(
            sorted(os.listdir(self.out_dir)),
            ['in_network_0000.jsonl', 'provider_references_0000.jsonl', 'root.json'],
        )

        with open(os.path.join(self.out_dir, 'root.json')) as f:
            root = json.load(f)
        self.assertEqual(root, {
            'reporting_entity_name': 'Example Health Plan',
            'reporting_entity_type': 'health insurance issuer',
            'last_updated_on': '2023-01-01',
            'version': '1.0.0',
            'plan_id': 123456789,
        })

        items = read_lines(os.path.join(self.out_dir, 'in_network_0000.jsonl'))
        self.assertEqual([item['billing_code'] for item in items], ['99213', '00000'])
        self.assertEqual(items[0]['negotiated_rates'][0]['negotiated_prices'][0]['negotiated_rate'], 123.45)

        references = read_lines(os.path.join(self.out_dir, 'provider_references_0000.jsonl'))
        self.assertEqual([r['provider_group_id'] for r in references], [1, 2])

    def test_gzipped_input(self):
        gz = os.path.join(self.tmp, 'mrf.json.gz')
        with open(MRF, 'rb') as src, gzip.open(gz, 'wb') as dst:
            shutil.copyfileobj(src, dst)

        lines = split_file(gz, self.out_dir)
        self.assertEqual(sum(lines.values()), 4)

    def test_empty_arrays_get_no_shard(self):
        mrf = os.path.join(self.tmp, 'empty.json')
        with open(mrf, 'w') as f:
            json.dump({'reporting_entity_name': 'x', 'in_network': [], 'provider_references': []}, f)

        self.assertEqual(split_file(mrf, self.out_dir), {})
        self.assertEqual(os.listdir(self.out_dir), ['root.json'])

    def test_non_empty_out_dir(self):
        os.makedirs(self.out_dir)
        stale = os.path.join(self.out_dir, 'stale.jsonl')
        with open(stale, 'w') as f:
            f.write('{}\n')

        with self.assertRaises(FileExistsError):
            split_file(MRF, self.out_dir)

        split_file(MRF, self.out_dir, overwrite=True)
        self.assertFalse(os.path.exists(stale))

    def test_array_expected(self):
        mrf = os.path.join(self.tmp, 'bad.json')
        with open(mrf, 'w') as f:
            json.dump({'in_network': {'not': 'an array'}}, f)

        with self.assertRaises(InvalidMRF):
            split_file(mrf, self.out_dir)

    def test_truncated_document(self):
        mrf = os.path.join(self.tmp, 'truncated.json')
        with open(MRF) as src, open(mrf, 'w') as dst:
            dst.write(src.read()[:300])

        with self.assertRaises(InvalidMRF):
            split_file(mrf, self.out_dir)

    def test_split_then_parse(self):
        split_file(MRF, self.out_dir)
        stats = parse(self.out_dir, os.path.join(self.tmp, 'out'), SERVICES, progress=False)

        # root; in_network, rate, price; provider_group, provider, tin
        self.assertEqual(stats.records_written, 7)
        self.assertEqual(stats.in_network_matched, 1)
        self.assertEqual(stats.provider_references_matched, 1)


class TestParsePipeline(unittest.TestCase):

    def test_pipeline_removes_shards(self):
        with tempfile.TemporaryDirectory() as tmp:
            tmp_path = os.path.join(tmp, 'work')
            out_dir = os.path.join(tmp, 'out')

            pipeline = new_parse_pipeline(MRF, out_dir, SERVICES, plan_id=42, tmp_path=tmp_path, progress=False)
            results = pipeline.run()

            self.assertEqual([step.name for step in pipeline.steps], ['Split', 'Parse', 'Clean'])
            self.assertEqual(results['Parse'].records_written, 7)
            self.assertEqual(os.listdir(tmp_path), [])
            self.assertEqual(os.listdir(out_dir), ['mrf_0000.zstd.parquet'])

    def test_pipeline_cleans_up_after_failure(self):
        with tempfile.TemporaryDirectory() as tmp:
            tmp_path = os.path.join(tmp, 'work')
            mrf = os.path.join(tmp, 'bad.json')
            with open(mrf, 'w') as f:
                json.dump({'in_network': 'not an array'}, f)

            pipeline = new_parse_pipeline(mrf, os.path.join(tmp, 'out'), SERVICES, tmp_path=tmp_path)

            with self.assertRaises(InvalidMRF):
                pipeline.run()
            self.assertEqual(os.listdir(tmp_path), [])

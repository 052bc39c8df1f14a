import os
import tempfile
import threading
import unittest
from pathlib import Path

import pyarrow.parquet as pq

from mrfparquet.exceptions import WriterError
from mrfparquet.schema import SCHEMA, NegotiatedPriceRecord, ProviderRecord, TinRecord
from mrfparquet.writers import ParquetWriterFactory, RecordSink


def tin_records(n, prefix='t'):
    return [
        TinRecord(uuid=f'{prefix}{i}', parent_uuid='root', tin_type='ein', value=str(i))
        for i in range(n)
    ]


def row_counts(files):
    return [pq.read_metadata(f).num_rows for f in files]


class TestParquetWriterFactory(unittest.TestCase):

    def test_file_names(self):
        with tempfile.TemporaryDirectory() as tmp:
            factory = ParquetWriterFactory('mrf', tmp)

            first = factory.create_writer()
            second = factory.create_writer()
            first.close()
            second.close()

            self.assertEqual(first.path, os.path.join(tmp, 'mrf_0000.zstd.parquet'))
            self.assertEqual(second.path, os.path.join(tmp, 'mrf_0001.zstd.parquet'))
            self.assertEqual(factory.file_index, 2)

    def test_output_dir_is_created(self):
        with tempfile.TemporaryDirectory() as tmp:
            out_dir = os.path.join(tmp, 'nested', 'out')
            writer = ParquetWriterFactory('mrf', out_dir).create_writer()
            writer.close()

            self.assertTrue(os.path.exists(writer.path))

    def test_output_on_a_filesystem(self):
        with tempfile.TemporaryDirectory() as tmp:
            out_uri = Path(tmp, 'out').as_uri()
            factory = ParquetWriterFactory('mrf', out_uri)
            sink = RecordSink(factory).start()
            sink.write(tin_records(3))
            files = sink.finalize()

            self.assertEqual(files, [out_uri + '/mrf_0000.zstd.parquet'])
            self.assertEqual(row_counts([os.path.join(tmp, 'out', 'mrf_0000.zstd.parquet')]), [3])

    def test_max_rows_per_file_must_be_positive(self):
        with self.assertRaises(ValueError):
            ParquetWriterFactory('mrf', 'out', max_rows_per_file=0)


class TestRecordFileWriter(unittest.TestCase):

    def test_rows_follow_schema(self):
        with tempfile.TemporaryDirectory() as tmp:
            writer = ParquetWriterFactory('mrf', tmp).create_writer()
            writer.write([
                ProviderRecord(uuid='p', parent_uuid='g', parent='provider_references', npi=[1, 2]),
                NegotiatedPriceRecord(
                    uuid='n',
                    parent_uuid='r',
                    negotiated_type='negotiated',
                    billing_class='professional',
                    expiration_date='9999-12-31',
                    negotiated_rate=1.5,
                    service_codes=['11'],
                ),
            ])
            writer.close()

            table = pq.read_table(writer.path)

        self.assertEqual(table.schema.names, SCHEMA.names)
        rows = table.to_pylist()
        self.assertEqual(rows[0]['record_type'], 'provider')
        self.assertEqual(rows[0]['provider_npi_list'], [1, 2])
        self.assertIsNone(rows[0]['in_np_negotiated_rate'])
        self.assertEqual(rows[1]['in_np_negotiated_rate'], 1.5)
        self.assertEqual(rows[1]['in_np_service_codes'], ['11'])
        self.assertEqual(rows[1]['in_np_billing_code_modifiers'], [])
        self.assertIsNone(rows[1]['provider_npi_list'])

    def test_row_groups(self):
        with tempfile.TemporaryDirectory() as tmp:
            writer = ParquetWriterFactory('mrf', tmp, max_rows_per_group=10).create_writer()
            writer.write(tin_records(25))
            writer.close()

            metadata = pq.read_metadata(writer.path)

        self.assertEqual(metadata.num_rows, 25)
        self.assertEqual(metadata.num_row_groups, 3)


class TestRecordSink(unittest.TestCase):

    def test_rotation(self):
        with tempfile.TemporaryDirectory() as tmp:
            factory = ParquetWriterFactory('mrf', tmp, max_rows_per_file=10)
            sink = RecordSink(factory, flush_rows=4).start()

            # Batch sizes that don't line up with the file size
            for i, n in enumerate([3, 7, 6, 9, 1]):
                sink.write(tin_records(n, prefix=f'b{i}-'))
            files = sink.finalize()

            counts = row_counts(files)

        self.assertEqual(sink.rows_written, 26)
        self.assertEqual(counts, [10, 10, 6])
        self.assertEqual(
            [os.path.basename(f) for f in files],
            ['mrf_0000.zstd.parquet', 'mrf_0001.zstd.parquet', 'mrf_0002.zstd.parquet'],
        )

    def test_batch_bigger_than_a_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            factory = ParquetWriterFactory('mrf', tmp, max_rows_per_file=4)
            sink = RecordSink(factory).start()
            sink.write(tin_records(10))
            files = sink.finalize()

            self.assertEqual(row_counts(files), [4, 4, 2])

    def test_exact_multiple_opens_no_empty_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            factory = ParquetWriterFactory('mrf', tmp, max_rows_per_file=5)
            sink = RecordSink(factory).start()
            sink.write(tin_records(5))
            sink.write(tin_records(5))
            files = sink.finalize()

            self.assertEqual(row_counts(files), [5, 5])

    def test_no_records_no_files(self):
        with tempfile.TemporaryDirectory() as tmp:
            sink = RecordSink(ParquetWriterFactory('mrf', tmp)).start()
            sink.write([])

            self.assertEqual(sink.finalize(), [])
            self.assertEqual(os.listdir(tmp), [])

    def test_concurrent_writers_lose_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            factory = ParquetWriterFactory('mrf', tmp, max_rows_per_file=1000)
            # A small queue so writers have to wait on the sink
            sink = RecordSink(factory, queue_size=2, flush_rows=100).start()

            def write(worker):
                for batch in range(20):
                    sink.write(tin_records(37, prefix=f'{worker}-{batch}-'))

            threads = [threading.Thread(target=write, args=(i,)) for i in range(5)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            files = sink.finalize()
            counts = row_counts(files)

        self.assertEqual(sum(counts), 5 * 20 * 37)
        self.assertTrue(all(count == 1000 for count in counts[:-1]))

    def test_write_after_finalize_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            sink = RecordSink(ParquetWriterFactory('mrf', tmp)).start()
            sink.finalize()

            with self.assertRaises(RuntimeError):
                sink.write(tin_records(1))

    def test_write_error_is_raised(self):
        with tempfile.TemporaryDirectory() as tmp:
            # The output "directory" is a file
            blocker = os.path.join(tmp, 'blocker')
            with open(blocker, 'w') as f:
                f.write('')

            sink = RecordSink(ParquetWriterFactory('mrf', os.path.join(blocker, 'out'))).start()
            sink.write(tin_records(1))

            with self.assertRaises(WriterError):
                sink.finalize()

    def test_abort(self):
        with tempfile.TemporaryDirectory() as tmp:
            sink = RecordSink(ParquetWriterFactory('mrf', tmp)).start()
            sink.write(tin_records(3))
            sink.abort()

            with self.assertRaises(RuntimeError):
                sink.write(tin_records(1))

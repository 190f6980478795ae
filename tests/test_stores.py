import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, call, patch

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / 'backend'))

from billing_sync.services.stores import MysqlSourceStore  # noqa: E402

CONFIG = {'host': 'legacy', 'user': 'ro', 'password': 'x', 'database': 'isp'}


class MysqlSourceStoreTests(unittest.TestCase):
    def _connect(self, batches):
        conn = MagicMock()
        cursor = conn.cursor.return_value
        cursor.fetchmany.side_effect = batches
        return conn, cursor

    def test_session_raises_group_concat_limit_before_the_query(self):
        conn, cursor = self._connect([[{'id': 1}, {'id': 2}], [{'id': 3}], []])
        store = MysqlSourceStore(CONFIG, batch_size=100, group_concat_max_len=1048576)
        with patch('billing_sync.services.stores.mysql.connector.connect', return_value=conn) as connect:
            rows = list(store.iter_rows('SELECT id FROM factura WHERE id > %s', [0]))

        self.assertEqual([r['id'] for r in rows], [1, 2, 3])
        connect.assert_called_once_with(**CONFIG)
        conn.cursor.assert_called_once_with(dictionary=True)
        self.assertEqual(
            cursor.execute.call_args_list,
            [
                call('SET SESSION group_concat_max_len = %s', (1048576,)),
                call('SELECT id FROM factura WHERE id > %s', (0,)),
            ],
        )
        cursor.close.assert_called_once_with()
        conn.close.assert_called_once_with()

    def test_zero_limit_leaves_the_server_default(self):
        conn, cursor = self._connect([[]])
        store = MysqlSourceStore(CONFIG, group_concat_max_len=0)
        with patch('billing_sync.services.stores.mysql.connector.connect', return_value=conn):
            self.assertEqual(list(store.iter_rows('SELECT 1')), [])
        self.assertEqual(cursor.execute.call_args_list, [call('SELECT 1', ())])

    def test_limit_defaults_to_settings(self):
        with patch('billing_sync.services.stores.settings.mysql_group_concat_max_len', 2048):
            store = MysqlSourceStore(CONFIG)
        conn, cursor = self._connect([[]])
        with patch('billing_sync.services.stores.mysql.connector.connect', return_value=conn):
            list(store.iter_rows('SELECT 1'))
        self.assertEqual(cursor.execute.call_args_list[0], call('SET SESSION group_concat_max_len = %s', (2048,)))

    def test_connection_closes_when_the_query_fails(self):
        conn, cursor = self._connect([])
        cursor.execute.side_effect = [None, RuntimeError('boom')]
        store = MysqlSourceStore(CONFIG, group_concat_max_len=1024)
        with patch('billing_sync.services.stores.mysql.connector.connect', return_value=conn):
            with self.assertRaises(RuntimeError):
                list(store.iter_rows('SELECT 1'))
        conn.close.assert_called_once_with()


if __name__ == '__main__':
    unittest.main()

import unittest

from unittest.mock import Mock, patch

from pgkeeper import parse_version
from pgkeeper.utils import mask_conninfo, parse_int, patch_config, polling_loop


class TestUtils(unittest.TestCase):

    def test_polling_loop(self):
        self.assertEqual(list(polling_loop(0.001, interval=0.001)), [0])

    @patch('time.sleep', Mock())
    def test_polling_loop_iterations(self):
        with patch('time.time', Mock(side_effect=[0, 0, 1, 2, 3])):
            self.assertEqual(list(polling_loop(3)), [0, 1, 2])

    def test_mask_conninfo(self):
        self.assertEqual(mask_conninfo('host=n1 PASSWORD = secret port=5432'), 'host=n1 PASSWORD = ****** port=5432')
        self.assertEqual(mask_conninfo("password='a \\' b' host=n1"), 'password=****** host=n1')
        self.assertEqual(mask_conninfo('postgres://u:p@n1/postgres'), 'postgres://u:******@n1/postgres')

    def test_patch_config(self):
        config = {'a': 1, 'log': {'level': 'INFO', 'dir': '/var/log'}, 'b': 'x'}
        self.assertTrue(patch_config(config, {'a': '2', 'log': {'dir': None}, 'b': None, 'c': 3}))
        self.assertEqual(config, {'a': '2', 'log': {'level': 'INFO'}, 'c': 3})
        self.assertFalse(patch_config(config, {'a': 2, 'd': None}))
        self.assertTrue(patch_config(config, {'c': {'x': 1}}))

    def test_parse_int(self):
        self.assertEqual(parse_int('5s', 's'), 5)
        self.assertEqual(parse_int('2min', 's'), 120)
        self.assertIsNone(parse_int('5 parsecs', 's'))

    def test_parse_version(self):
        self.assertEqual(parse_version('3.1.18'), (3, 1, 18))
        self.assertEqual(parse_version('2.9.9 (dt dec pq3 ext lo64)'), (2, 9, 9))

#!/usr/bin/env python3
"""
Tests for the main() function and command-line argument parsing.
"""

import unittest
import tempfile
import sys
from pathlib import Path
from io import StringIO
from unittest.mock import patch, MagicMock

# Add parent directory to path to import the module
sys.path.insert(0, str(Path(__file__).parent.parent))

from ldr_shrinker import main, BlockHeader, BFLAG_FIRST, BFLAG_IGNORE, BFLAG_FINAL, DEFAULT_FILL_THRESHOLD


class TestMainFunction(unittest.TestCase):
    """Tests for the main() function and argument parsing."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.input_file = Path(self.temp_dir.name) / "app.ldr"
        self.output_file = Path(self.temp_dir.name) / "app_fast.ldr"
        self.input_file.write_bytes(
            BlockHeader(flags=BFLAG_FIRST | BFLAG_IGNORE, target_address=0x1000).pack()
            + BlockHeader(target_address=0x1000, byte_count=4).pack() + b'\x01\x02\x03\x04'
            + BlockHeader(flags=BFLAG_FINAL, target_address=0x1000).pack()
        )

    def tearDown(self):
        """Clean up test fixtures."""
        self.temp_dir.cleanup()

    @patch('ldr_shrinker.LoaderShrinker')
    def test_main_passes_options(self, mock_shrinker_class):
        """Test that command-line options reach the shrinker."""
        mock_shrinker = MagicMock()
        mock_shrinker.input_block_count = 0
        mock_shrinker.output_block_count = 0
        mock_shrinker_class.return_value = mock_shrinker

        with patch('sys.argv', ['ldr_shrinker.py', '-v', '-t', '512',
                                str(self.input_file), str(self.output_file)]):
            with patch('sys.stdout', new_callable=StringIO):
                main()

        mock_shrinker.run.assert_called_once()
        kwargs = mock_shrinker_class.call_args[1]
        self.assertEqual(kwargs['fill_threshold'], 512)
        self.assertTrue(kwargs['verbose'])

    @patch('ldr_shrinker.LoaderShrinker')
    def test_main_defaults(self, mock_shrinker_class):
        mock_shrinker = MagicMock()
        mock_shrinker.input_block_count = 0
        mock_shrinker.output_block_count = 0
        mock_shrinker_class.return_value = mock_shrinker

        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file), str(self.output_file)]):
            with patch('sys.stdout', new_callable=StringIO):
                main()

        kwargs = mock_shrinker_class.call_args[1]
        self.assertEqual(kwargs['fill_threshold'], DEFAULT_FILL_THRESHOLD)
        self.assertFalse(kwargs['verbose'])

    def test_main_success_summary(self):
        """Test a real run and its summary line."""
        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file), str(self.output_file)]):
            with patch('sys.stdout', new_callable=StringIO) as stdout:
                main()

        self.assertIn('1 blocks read; 1 blocks written', stdout.getvalue())
        self.assertTrue(self.output_file.exists())

    def test_main_missing_arguments(self):
        """Test main() without an output file."""
        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file)]):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

                self.assertEqual(cm.exception.code, 2)

    def test_main_negative_threshold(self):
        with patch('sys.argv', ['ldr_shrinker.py', '-t', '-1', str(self.input_file), str(self.output_file)]):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

                self.assertEqual(cm.exception.code, 2)

    def test_main_nonexistent_input(self):
        """Test that a missing input fails before the output is created."""
        nonexistent = Path(self.temp_dir.name) / "nonexistent.ldr"

        with patch('sys.argv', ['ldr_shrinker.py', str(nonexistent), str(self.output_file)]):
            with patch('sys.stderr', new_callable=StringIO) as stderr:
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('unable to open input file', stderr.getvalue())
        self.assertFalse(self.output_file.exists())

    def test_main_unwritable_output(self):
        """Test that an output path in a missing directory fails."""
        output = Path(self.temp_dir.name) / "missing" / "out.ldr"

        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file), str(output)]):
            with patch('sys.stderr', new_callable=StringIO) as stderr:
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('unable to open output file', stderr.getvalue())

    def test_main_checksum_failure(self):
        """Test that a corrupt header exits with status 1."""
        raw = bytearray(self.input_file.read_bytes())
        raw[20] ^= 0x01
        self.input_file.write_bytes(bytes(raw))

        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file), str(self.output_file)]):
            with patch('sys.stderr', new_callable=StringIO) as stderr:
                with patch('sys.stdout', new_callable=StringIO) as stdout:
                    with self.assertRaises(SystemExit) as cm:
                        main()

        self.assertEqual(cm.exception.code, 1)
        self.assertIn('Checksum failed', stderr.getvalue())
        self.assertEqual(stdout.getvalue(), '')
        self.assertEqual(self.output_file.read_bytes(), b'')

    @patch('ldr_shrinker.LoaderShrinker')
    def test_main_keyboard_interrupt(self, mock_shrinker_class):
        mock_shrinker = MagicMock()
        mock_shrinker.run.side_effect = KeyboardInterrupt
        mock_shrinker_class.return_value = mock_shrinker

        with patch('sys.argv', ['ldr_shrinker.py', str(self.input_file), str(self.output_file)]):
            with patch('sys.stderr', StringIO()):
                with self.assertRaises(SystemExit) as cm:
                    main()

        self.assertEqual(cm.exception.code, 130)


if __name__ == '__main__':
    unittest.main()

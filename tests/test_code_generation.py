import os
import unittest
from collections import Counter

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

from app.services.otp_engine import generate_code


class CodeGenerationTests(unittest.TestCase):
    def test_two_digit_codes_are_uniform(self):
        samples = 45000
        counts = Counter(generate_code(2) for _ in range(samples))

        self.assertEqual(set(counts), {str(value) for value in range(10, 100)})
        expected = samples / 90
        chi_square = sum((observed - expected) ** 2 / expected for observed in counts.values())
        # 89 degrees of freedom; 150 is far beyond the 99.99th percentile.
        self.assertLess(chi_square, 150)

    def test_six_digit_codes_never_start_with_zero(self):
        for _ in range(2000):
            code = generate_code(6)
            self.assertEqual(len(code), 6)
            self.assertNotEqual(code[0], "0")
            self.assertTrue(100000 <= int(code) <= 999999)

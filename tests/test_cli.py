import contextlib
import io
import os
import tempfile
import unittest

from simcache import Machine, load_machine_code, main, print_state


def ram_lines(words):
    return ["ram[%d] = 16'b%s;" % (addr, format(word, "016b")) for addr, word in enumerate(words)]

# addi $1, $0, 5 / halt
ADDI_HALT = [0b0010000010000101, 0b0100000000000001]

# lw $1, 0($0) / lw $1, 4($0) / lw $1, 0($0) / halt
THREE_LOADS = [0b1000000010000000, 0b1000000010000100, 0b1000000010000000, 0b0100000000000011]


class TestLoadMachineCode(unittest.TestCase):

    def test_load(self):
        mem = [0] * 16
        lines = ram_lines(ADDI_HALT)
        lines[1] += "\t\t// halt"
        load_machine_code(lines, mem)
        self.assertEqual(mem[:3], ADDI_HALT + [0])

    def test_bad_line(self):
        with self.assertRaises(ValueError):
            load_machine_code(["ram[0] = 16'b0000000000000000"], [0] * 4)

    def test_out_of_sequence(self):
        lines = ram_lines(ADDI_HALT)
        lines[1] = lines[1].replace("ram[1]", "ram[2]")
        with self.assertRaises(ValueError):
            load_machine_code(lines, [0] * 4)

    def test_too_big(self):
        with self.assertRaises(ValueError):
            load_machine_code(ram_lines([0] * 5), [0] * 4)

    def test_fills_machine_memory(self):
        machine = Machine()
        load_machine_code(ram_lines([0] * 8192), machine.memory)
        with self.assertRaises(ValueError):
            load_machine_code(ram_lines([0] * 8193), machine.memory)


class TestPrintState(unittest.TestCase):

    def test_dump(self):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            print_state(1, [0, 5, 0, 0, 0, 0, 0, 0], ADDI_HALT + [0] * 14, 16)
        lines = out.getvalue().splitlines()
        self.assertEqual(lines[0], "Final state:")
        self.assertEqual(lines[1], "\tpc=    1")
        self.assertEqual(lines[3], "\t$1=    5")
        self.assertEqual(lines[10], "2085 4001 0000 0000 0000 0000 0000 0000 ")
        self.assertEqual(len(lines), 12)


class TestMain(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)

    def write_program(self, words, name="prog.bin"):
        path = os.path.join(self.tmpdir.name, name)
        with open(path, "w") as f:
            f.write("\n".join(ram_lines(words)) + "\n")
        return path

    def simulate(self, *args):
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            try:
                status = main(list(args))
            except SystemExit as e:
                status = e.code
        return status, out.getvalue(), err.getvalue()

    def test_one_cache_trace(self):
        status, out, err = self.simulate(self.write_program(THREE_LOADS), "--cache", "4,1,1")
        self.assertEqual(status, 0)
        self.assertEqual(out.splitlines(), [
            "Cache L1 has size 4, associativity 1, blocksize 1, rows 4",
            "L1 MISS  pc:    0\taddr:    0\trow:   0",
            "L1 MISS  pc:    1\taddr:    4\trow:   0",
            "L1 MISS  pc:    2\taddr:    0\trow:   0",
        ])

    def test_two_cache_trace(self):
        status, out, err = self.simulate(self.write_program(THREE_LOADS), "--cache", "4,1,1,8,2,1")
        self.assertEqual(status, 0)
        lines = out.splitlines()
        self.assertEqual(lines[:2], [
            "Cache L1 has size 4, associativity 1, blocksize 1, rows 4",
            "Cache L2 has size 8, associativity 2, blocksize 1, rows 4",
        ])
        self.assertEqual([line.split()[:2] for line in lines[2:]], [
            ["L1", "MISS"], ["L2", "MISS"],
            ["L1", "MISS"], ["L2", "MISS"],
            ["L1", "MISS"], ["L2", "HIT"],
        ])

    def test_no_cache_prints_nothing(self):
        status, out, err = self.simulate(self.write_program(THREE_LOADS))
        self.assertEqual((status, out), (0, ""))

    def test_final_state(self):
        status, out, err = self.simulate(self.write_program(ADDI_HALT), "--cache", "4,1,1",
                                         "--final-state")
        self.assertEqual(status, 0)
        lines = out.splitlines()
        self.assertEqual(lines[1], "Final state:")
        self.assertEqual(lines[2], "\tpc=    1")
        self.assertEqual(lines[4], "\t$1=    5")
        self.assertEqual(len(lines), 1 + 10 + 16)

    def test_bad_cache_count(self):
        status, out, err = self.simulate(self.write_program(THREE_LOADS), "--cache", "4,1,1,8")
        self.assertEqual(status, 1)
        self.assertEqual(out, "")
        self.assertIn("Invalid cache config", err)

    def test_non_dividing_cache(self):
        status, out, err = self.simulate(self.write_program(THREE_LOADS), "--cache", "6,4,1")
        self.assertEqual(status, 1)
        self.assertEqual(out, "")

    def test_missing_file(self):
        status, out, err = self.simulate(os.path.join(self.tmpdir.name, "nope.bin"))
        self.assertEqual(status, 1)
        self.assertIn("Can't open file", err)

    def test_bad_program(self):
        path = os.path.join(self.tmpdir.name, "bad.bin")
        with open(path, "w") as f:
            f.write("ram[1] = 16'b0000000000000000;\n")
        status, out, err = self.simulate(path, "--cache", "4,1,1")
        self.assertEqual(status, 1)
        self.assertEqual(out, "")
        self.assertIn("out of sequence", err)

    def test_usage_errors(self):
        path = self.write_program(ADDI_HALT)
        for args in [(), (path, path), (path, "--bogus"), (path, "--cache")]:
            status, out, err = self.simulate(*args)
            self.assertEqual(status, 1, args)
            self.assertIn("usage", err)

    def test_help(self):
        status, out, err = self.simulate("--help")
        self.assertEqual(status, 0)
        self.assertIn("--cache", out)


if __name__ == '__main__':
    unittest.main()

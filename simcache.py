#!/usr/bin/python3

"""
simcache.py

E20 simulator coupled with a one- or two-level LRU cache model.
The caches only track tags, so they decide hit/miss and replacement
but never hold data.
"""

from collections import namedtuple
from enum import Enum, IntEnum
import re
import sys
import argparse

#####################################
# Helper Functions for E20 Simulator#
#####################################

# Some helpful constant values that we'll be using.
Constants = namedtuple("Constants",["NUM_REGS", "MEM_SIZE", "REG_SIZE"])
constants = Constants(NUM_REGS = 8,
                      MEM_SIZE = 2**13,
                      REG_SIZE = 2**16)

ADDR_MASK = constants.MEM_SIZE - 1
WORD_MASK = constants.REG_SIZE - 1

# Register written by jal
LINK_REG = 7

def load_machine_code(machine_code, mem):
    """
    Loads an E20 machine code file into the list
    provided by mem. Raises ValueError on a line that
    does not parse, on an address out of sequence, or
    when the program does not fit in mem.
    sig: list(str) -> list(int) -> NoneType
    """
    machine_code_re = re.compile(r"^ram\[(\d+)\] = 16'b([01]+);.*$")
    expectedaddr = 0
    for line in machine_code:
        line = line.rstrip("\r\n")
        match = machine_code_re.match(line)
        if not match:
            raise ValueError("Can't parse line: %s" % line)
        addr, instr = match.groups()
        addr = int(addr,10)
        instr = int(instr,2)
        if addr != expectedaddr:
            raise ValueError("Memory addresses encountered out of sequence: %s" % addr)
        if addr >= len(mem):
            raise ValueError("Program too big for memory")
        expectedaddr += 1
        mem[addr] = instr & WORD_MASK

def print_state(pc, regs, memory, memquantity):
    """
    Prints the current state of the simulator, including
    the current program counter, the current register values,
    and the first memquantity elements of memory.
    sig: int -> list(int) -> list(int) - int -> NoneType
    """
    print("Final state:")
    print("\tpc="+format(pc,"5d"))
    for reg, regval in enumerate(regs):
        print(("\t$%s=" % reg)+format(regval,"5d"))
    line = ""
    for count in range(memquantity):
        line += format(memory[count], "04x")+ " "
        if count % 8 == 7:
            print(line)
            line = ""
    if line != "":
        print(line)

def getOpCode(instr):
    """
    Extract Opcode
    sig: int -> int
    """
    return (instr >> 13) & 0b111

def getFunctionCode(instr):
    """
    Function code of a three register instruction
    sig: int -> int
    """
    return instr & 0b1111

def getRegALocation(instr):
    """
    Get regA location
    sig: int -> int
    """
    return (instr >> 10) & 0b111

def getRegBLocation(instr):
    """
    Get regB location
    sig: int -> int
    """
    return (instr >> 7) & 0b111

def getRegCLocation(instr):
    """
    Get regC location
    sig: int -> int
    """
    return (instr >> 4) & 0b111

def getImm7(instr):
    """
    Get last seven bits, sign extended to a 16 bit word
    sig: int -> int
    """
    return signExtend(instr & 0b1111111)

def getImm13(instr):
    """
    Get last thirteen bits
    sig: int -> int
    """
    return instr & 0b1111111111111

def signExtend(val):
    """
    Copy bit 6 of a seven bit value into bits 15-7
    sig: int -> int
    """
    if val & 0b1000000:
        return val | 0b1111111110000000
    return val

def makeUnsigned(val):
    """
    wrap a result into a 16 bit register value
    sig: int -> int
    """
    return val & WORD_MASK

def fixPC(pc):
    """
    get pc in range
    sig: int -> int
    """
    return pc & ADDR_MASK

def incPC(pc):
    """
    increment pc
    sig: int -> int
    """
    return fixPC(pc + 1)

#####################################
# Instruction Decoding###############
#####################################

class Opcode(IntEnum):
    REG = 0b000
    ADDI = 0b001
    J = 0b010
    JAL = 0b011
    LW = 0b100
    SW = 0b101
    JEQ = 0b110
    SLTI = 0b111

class Shape(Enum):
    REG = "register-register"
    IMM = "register-immediate"
    CONTROL = "control-transfer"

SHAPES = {
    Opcode.REG: Shape.REG,
    Opcode.ADDI: Shape.IMM,
    Opcode.SLTI: Shape.IMM,
    Opcode.LW: Shape.IMM,
    Opcode.SW: Shape.IMM,
    Opcode.JEQ: Shape.IMM,
    Opcode.J: Shape.CONTROL,
    Opcode.JAL: Shape.CONTROL,
}

FUNC_ADD = 0b0000
FUNC_SUB = 0b0001
FUNC_OR = 0b0010
FUNC_AND = 0b0011
FUNC_SLT = 0b0100
FUNC_JR = 0b1000

# Function codes that write regC. Anything else but jr is a nop.
ALU = {
    FUNC_ADD: lambda a, b: a + b,
    FUNC_SUB: lambda a, b: a - b,
    FUNC_OR: lambda a, b: a | b,
    FUNC_AND: lambda a, b: a & b,
    FUNC_SLT: lambda a, b: 1 if a < b else 0,
}

Instruction = namedtuple("Instruction",
    ["shape", "opcode", "func", "regA", "regB", "regC", "imm", "target"])

def decode(word):
    """
    Split an instruction word into all of its fields. Which
    fields matter depends on the shape; the others are still
    filled in so that decoding never fails.
    sig: int -> Instruction
    """
    opcode = Opcode(getOpCode(word))
    return Instruction(shape = SHAPES[opcode],
                       opcode = opcode,
                       func = getFunctionCode(word),
                       regA = getRegALocation(word),
                       regB = getRegBLocation(word),
                       regC = getRegCLocation(word),
                       imm = getImm7(word),
                       target = getImm13(word))

#####################################
# Helper Functions for E20 Cache#####
#####################################

HIT = "HIT"
MISS = "MISS"
SW = "SW"

def print_cache_config(cache_name, size, assoc, blocksize, num_rows):
    """
    Prints out the correctly-formatted configuration of a cache.

    cache_name -- The name of the cache. "L1" or "L2"

    size -- The total size of the cache, measured in memory cells.
        Excludes metadata

    assoc -- The associativity of the cache.

    blocksize -- The blocksize of the cache.

    num_rows -- The number of rows in the given cache.

    sig: str, int, int, int, int -> NoneType
    """

    summary = "Cache %s has size %s, associativity %s, " \
        "blocksize %s, rows %s" % (cache_name,
        size, assoc, blocksize, num_rows)
    print(summary)

def print_log_entry(cache_name, status, pc, addr, row):
    """
    Prints out a correctly-formatted log entry.

    cache_name -- The name of the cache where the event
        occurred. "L1" or "L2"

    status -- The kind of cache event. "SW", "HIT", or
        "MISS"

    pc -- The program counter of the memory
        access instruction

    addr -- The memory address being accessed.

    row -- The cache row or set number where the data
        is stored.

    sig: str, str, int, int, int -> NoneType
    """
    log_entry = "{event:8s} pc:{pc:5d}\taddr:{addr:5d}\t" \
        "row:{row:4d}".format(row=row, pc=pc, addr=addr,
            event = cache_name + " " + status)
    print(log_entry)

LogEntry = namedtuple("LogEntry", ["cache_name", "status", "pc", "addr", "row"])

def emit_log_entry(entry):
    """
    Default sink for cache events
    sig: LogEntry -> NoneType
    """
    print_log_entry(*entry)

class CacheConfig(namedtuple("CacheConfig", ["size", "assoc", "blocksize"])):
    """Geometry of one cache, all measured in memory cells."""
    __slots__ = ()

    @property
    def rows(self):
        return self.size // (self.assoc * self.blocksize)

    def validate(self):
        """
        Raise ValueError unless the geometry divides into a whole,
        non-zero number of rows.
        sig: None -> None
        """
        for field, value in zip(self._fields, self):
            if value <= 0:
                raise ValueError("Invalid cache config: %s must be positive, got %s" % (field, value))
        if self.size % (self.assoc * self.blocksize) != 0:
            raise ValueError("Invalid cache config: size %s is not a multiple of "
                             "associativity*blocksize (%s)" % (self.size, self.assoc * self.blocksize))

class CacheBlock:
    def __init__(self):
        """
        A block starts out invalid and freshly used. No data is kept,
        only the tag and the age used for LRU.
        sig: None -> None
        """
        self.valid = False
        self.tag = 0
        self.recency = 0

    def fill(self, tag):
        self.valid = True
        self.tag = tag
        self.recency = 0

    def __repr__(self):
        return "CacheBlock(valid=%s, tag=%s, recency=%s)" % (self.valid, self.tag, self.recency)

def selectVictim(row, preferInvalid):
    """
    Pick the index of the block to replace in a row.

    Scanning in index order, a block takes over as the victim when its
    recency is strictly greater than the recency of the current victim,
    so ties go to the lowest index. With preferInvalid an invalid block
    always takes over too, and the running maximum drops to its recency.
    sig: list[CacheBlock], bool -> int
    """
    victim = None
    oldest = -1
    for index, block in enumerate(row):
        if (preferInvalid and not block.valid) or block.recency > oldest:
            victim = index
            oldest = block.recency
    return victim

class Cache:
    def __init__(self, name, config):
        """
        Build numRows rows of assoc invalid blocks each
        sig: str, CacheConfig -> None
        """
        config.validate()
        self.name = name
        self.config = config
        self.numRows = config.rows
        self.rows = [[CacheBlock() for block in range(config.assoc)]
                     for row in range(self.numRows)]

    def locate(self, address):
        """
        Row and tag of an address. Word addressed, and the
        offset inside the block is never needed.
        sig: int -> (int, int)
        """
        blockNumber = (address & ADDR_MASK) // self.config.blocksize
        return blockNumber % self.numRows, blockNumber // self.numRows

    def _install(self, row, tag, preferInvalid):
        row[selectVictim(row, preferInvalid)].fill(tag)

    def loadWord(self, address):
        """
        Look up address, aging every block in its row once. A hit
        makes the block most recently used. A miss replaces the oldest
        block of the row whether or not an invalid block is available.
        sig: int -> (bool, int)
        """
        rowIndex, tag = self.locate(address)
        row = self.rows[rowIndex]
        for block in row:
            block.recency += 1
        for block in row:
            if block.valid and block.tag == tag:
                block.recency = 0
                return True, rowIndex
        self._install(row, tag, preferInvalid=False)
        return False, rowIndex

    def storeWord(self, address):
        """
        Install the tag of address, preferring invalid blocks. Stores
        never check for a tag already in the row.
        sig: int -> int
        """
        rowIndex, tag = self.locate(address)
        row = self.rows[rowIndex]
        for block in row:
            block.recency += 1
        self._install(row, tag, preferInvalid=True)
        return rowIndex

class CacheHierarchy:
    def __init__(self, l1, l2=None, log=emit_log_entry):
        """
        L1 is always present, L2 is optional. log receives one
        LogEntry per cache touched.
        sig: Cache, Cache, callable -> None
        """
        self.l1 = l1
        self.l2 = l2
        self.log = log

    @property
    def levels(self):
        if self.l2 is None:
            return [self.l1]
        return [self.l1, self.l2]

    def configure(self, report=print_cache_config):
        """
        Announce the geometry of every cache, L1 first
        sig: callable -> None
        """
        for cache in self.levels:
            config = cache.config
            report(cache.name, config.size, config.assoc, config.blocksize, cache.numRows)

    def load(self, pc, address):
        """
        Send a load through L1 and, on an L1 miss, through L2.
        Returns whether some level hit.
        sig: int, int -> bool
        """
        hit = False
        for cache in self.levels:
            hit, row = cache.loadWord(address)
            self.log(LogEntry(cache.name, HIT if hit else MISS, pc, address, row))
            if hit:
                break
        return hit

    def store(self, pc, address):
        """
        Stores go to every level regardless of hits
        sig: int, int -> None
        """
        for cache in self.levels:
            row = cache.storeWord(address)
            self.log(LogEntry(cache.name, SW, pc, address, row))

def parse_cache_config(text, log=emit_log_entry):
    """
    Build the cache hierarchy from the --cache argument:
    size,associativity,blocksize for one cache, or two such
    triples for L1 and L2.
    sig: str, callable -> CacheHierarchy
    """
    try:
        parts = [int(x) for x in text.split(",")]
    except ValueError:
        raise ValueError("Invalid cache config: %s" % text)
    if len(parts) == 3:
        return CacheHierarchy(Cache("L1", CacheConfig(*parts)), log=log)
    elif len(parts) == 6:
        return CacheHierarchy(Cache("L1", CacheConfig(*parts[:3])),
                              Cache("L2", CacheConfig(*parts[3:])), log=log)
    raise ValueError("Invalid cache config")

#####################################
# E20 Machine State and Execution####
#####################################

class Machine:
    def __init__(self):
        """
        Program counter, register file and memory of one run
        sig: None -> None
        """
        self.pc = 0
        self.regs = [0] * constants.NUM_REGS
        self.memory = [0] * constants.MEM_SIZE

    def fetch(self):
        return self.memory[fixPC(self.pc)]

    def read(self, address):
        return self.memory[address & ADDR_MASK]

    def write(self, address, value):
        self.memory[address & ADDR_MASK] = makeUnsigned(value)

def effectiveAddress(machine, instr):
    """
    Address of a lw or sw
    sig: Machine, Instruction -> int
    """
    return (machine.regs[instr.regA] + instr.imm) & ADDR_MASK

def execute_reg(machine, instr):
    """
    add, sub, or, and, slt and jr. Unknown function codes do nothing
    besides advancing pc.
    sig: Machine, Instruction -> None
    """
    regs = machine.regs
    if instr.func == FUNC_JR:
        # Land on the target after the increment below
        machine.pc = fixPC(regs[instr.regA] - 1)
    elif instr.func in ALU:
        regs[instr.regC] = makeUnsigned(ALU[instr.func](regs[instr.regA], regs[instr.regB]))
    machine.pc = incPC(machine.pc)

def execute_imm(machine, instr, caches=None, load_on_hit=False):
    """
    addi, slti, lw, sw and jeq.

    A lw only copies memory into its destination register when the
    access missed in every cache level, unless load_on_hit is set.
    Without caches every lw reads memory.
    sig: Machine, Instruction, CacheHierarchy, bool -> None
    """
    regs = machine.regs
    pc = machine.pc
    nextPC = incPC(pc)
    opcode = instr.opcode
    if opcode == Opcode.ADDI:
        regs[instr.regB] = makeUnsigned(regs[instr.regA] + instr.imm)
    elif opcode == Opcode.SLTI:
        # imm is already widened to 16 bits, so negative values compare large
        regs[instr.regB] = 1 if regs[instr.regA] < instr.imm else 0
    elif opcode == Opcode.LW:
        addr = effectiveAddress(machine, instr)
        hit = False
        if caches is not None:
            hit = caches.load(pc, addr)
        if not hit or load_on_hit:
            regs[instr.regB] = machine.read(addr)
    elif opcode == Opcode.SW:
        addr = effectiveAddress(machine, instr)
        machine.write(addr, regs[instr.regB])
        if caches is not None:
            caches.store(pc, addr)
    elif opcode == Opcode.JEQ:
        if regs[instr.regA] == regs[instr.regB]:
            nextPC = fixPC(pc + 1 + instr.imm)
    machine.pc = nextPC

def execute_control(machine, instr):
    """
    j and jal
    sig: Machine, Instruction -> None
    """
    if instr.opcode == Opcode.JAL:
        machine.regs[LINK_REG] = makeUnsigned(machine.pc + 1)
    machine.pc = instr.target

def isHalt(machine, instr):
    """
    A j to its own address ends the program
    sig: Machine, Instruction -> bool
    """
    return instr.opcode == Opcode.J and instr.target == machine.pc

def step(machine, caches=None, load_on_hit=False):
    """
    Fetch, decode and execute one instruction. Returns False
    without touching any state when the instruction is a halt.
    sig: Machine, CacheHierarchy, bool -> bool
    """
    instr = decode(machine.fetch())
    if isHalt(machine, instr):
        return False
    if instr.shape is Shape.REG:
        execute_reg(machine, instr)
    elif instr.shape is Shape.IMM:
        execute_imm(machine, instr, caches, load_on_hit)
    else:
        execute_control(machine, instr)
    # $0 is always zero
    machine.regs[0] = 0
    return True

def run(machine, caches=None, load_on_hit=False, limit=None):
    """
    Run until halt and return how many instructions executed.
    With a limit, raise RuntimeError once more than limit
    instructions have run.
    sig: Machine, CacheHierarchy, bool, int -> int
    """
    count = 0
    while step(machine, caches, load_on_hit):
        count += 1
        if limit is not None and count > limit:
            raise RuntimeError("Program did not halt within %s instructions" % limit)
    return count

#####################################
# Command Line#######################
#####################################

class ArgumentParser(argparse.ArgumentParser):
    # Usage errors exit with status 1
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, "%s: error: %s\n" % (self.prog, message))

def main(argv=None):
    parser = ArgumentParser(description='Simulate E20 cache')
    parser.add_argument('filename', help=
        'The file containing machine code, typically with .bin suffix')
    parser.add_argument('--cache', help=
        'Cache configuration: size,associativity,blocksize (for one cache) '
        'or size,associativity,blocksize,size,associativity,blocksize (for two caches)')
    parser.add_argument('--load-on-hit', action='store_true', help=
        'Also copy memory into the destination register when a lw hits in the cache')
    parser.add_argument('--final-state', action='store_true', help=
        'Print the program counter, registers and the start of memory after halting')
    cmdline = parser.parse_args(argv)

    caches = None
    if cmdline.cache:
        try:
            caches = parse_cache_config(cmdline.cache)
        except ValueError as e:
            print(e, file=sys.stderr)
            return 1

    machine = Machine()
    try:
        with open(cmdline.filename) as file:
            load_machine_code(file, machine.memory)
    except OSError:
        print("Can't open file %s" % cmdline.filename, file=sys.stderr)
        return 1
    except ValueError as e:
        print(e, file=sys.stderr)
        return 1

    if caches is not None:
        caches.configure()

    # E20 Simulation
    run(machine, caches, cmdline.load_on_hit)

    if cmdline.final_state:
        print_state(machine.pc, machine.regs, machine.memory, 128)
    return 0

def console_main():
    sys.exit(main())

if __name__ == "__main__":
    console_main()

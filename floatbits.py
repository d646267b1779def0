#
# Conversion of finite values to IEEE-754 binary interchange encodings
#
# (c) Neil Booth 2007-2021.  All rights reserved.
#

import argparse
import logging
import re
import sys
import threading
from collections import namedtuple
from decimal import Decimal
from enum import IntFlag
from fractions import Fraction
from itertools import islice
from math import ceil, floor, log2
from typing import NamedTuple

import attr

__all__ = ('Context', 'DefaultContext', 'get_context', 'set_context', 'local_context',
           'DefaultBitFormat', 'DefaultHexFormat', 'Flags',
           'BinaryFormat', 'BitFields', 'TextFormat',
           'EncodeError', 'PrecisionError', 'UnsupportedValue', 'RangeError',
           'Overflow', 'Underflow',
           'ROUND_GUARD_BIT', 'ROUND_CEILING', 'ROUND_FLOOR', 'ROUND_DOWN', 'ROUND_UP',
           'ROUND_HALF_EVEN', 'ROUND_HALF_UP', 'ROUND_HALF_DOWN',
           'IEEEhalf', 'IEEEsingle', 'IEEEdouble', 'x87extended',
           'encode', 'decompose', 'to_fixed_point', 'to_binary', 'frac_to_base',
           'fraction_digits', 'main')

logger = logging.getLogger(__name__)


# Rounding modes
ROUND_GUARD_BIT = 'ROUND_GUARD_BIT'     # Copy the guard bit into the LSB
ROUND_CEILING   = 'ROUND_CEILING'       # Towards +infinity
ROUND_FLOOR     = 'ROUND_FLOOR'         # Towards -infinity
ROUND_DOWN      = 'ROUND_DOWN'          # Towards zero
ROUND_UP        = 'ROUND_UP'            # Away from zero
ROUND_HALF_EVEN = 'ROUND_HALF_EVEN'     # To nearest with ties towards even
ROUND_HALF_DOWN = 'ROUND_HALF_DOWN'     # To nearest with ties towards zero
ROUND_HALF_UP   = 'ROUND_HALF_UP'       # To nearest with ties away from zero

all_roundings = frozenset((ROUND_GUARD_BIT, ROUND_CEILING, ROUND_FLOOR, ROUND_DOWN,
                           ROUND_UP, ROUND_HALF_EVEN, ROUND_HALF_DOWN, ROUND_HALF_UP))


# Encoding status flags.
class Flags(IntFlag):
    OVERFLOW    = 0x04
    UNDERFLOW   = 0x08
    INEXACT     = 0x10


class BitFields(namedtuple('BitFields', 'sign exponent integer fraction')):
    '''The fields of an encoding as strings of '0' and '1' characters, most significant
    bit first.  integer is the explicit integer bit, and is empty for formats that do not
    store one.'''

    def bits(self):
        '''Return the complete encoding.'''
        return ''.join(self)

    def pack(self, endianness=None):
        '''Return the encoding as bytes of the given endianness.

        Endianness can be 'big' or 'little'.  If None, host-native endianness is used.'''
        bits = self.bits()
        return int(bits, 2).to_bytes(len(bits) // 8, endianness or host_endianness)


@attr.s(slots=True, kw_only=True)
class TextFormat:
    '''Controls the display of an encoding.'''

    # Placed between the sign, exponent, integer bit and fraction fields.  Ignored for
    # hexadecimal output.
    separator = attr.ib(default='')
    # 2 for a bit string, 16 for the whole encoding as zero-padded hexadecimal.
    radix = attr.ib(default=2, validator=attr.validators.in_((2, 16)))
    # Output before the digits, for example '0x'
    prefix = attr.ib(default='')
    # If True the output, including the prefix, is in upper case
    upper_case = attr.ib(default=False)

    def format_fields(self, fields):
        '''Return the BitFields formatted as text.'''
        if self.radix == 16:
            bits = fields.bits()
            digits = f'{int(bits, 2):0{(len(bits) + 3) // 4}x}'
        else:
            digits = self.separator.join(field for field in fields if field)

        result = self.prefix + digits
        if self.upper_case:
            result = result.upper()
        return result


DefaultBitFormat = TextFormat()
DefaultHexFormat = TextFormat(radix=16, prefix='0x')


#
# Errors
#

class EncodeError(ArithmeticError):
    '''All exceptions raised by this module subclass from this.

    EncodeError expects three arguments:

         def __init__(self, value, fmt, message):

    value is the value that was being encoded (None if encoding had not started), fmt is
    the destination BinaryFormat, or for PrecisionError the precision that was requested.
    '''

    @property
    def value(self):
        return self.args[0]

    @property
    def fmt(self):
        return self.args[1]

    def __str__(self):
        return self.args[2]


class PrecisionError(EncodeError, ValueError):
    '''Raised when a precision class is missing or not one of 16, 32, 64 and 80.'''


class UnsupportedValue(EncodeError, ValueError):
    '''Raised for zeroes, infinities, NaNs and text that is not a decimal number.'''


class RangeError(EncodeError):
    '''The biased exponent cannot be represented by a normal number of the format.'''


class Overflow(RangeError, OverflowError):
    '''The value is too large for the format.'''


class Underflow(RangeError):
    '''The value is smaller than the smallest normal number of the format.  Tininess is
    detected before rounding.'''


class Context:
    '''The encoding context.  Carries the rounding mode and the status flags.'''

    __slots__ = ('rounding', 'flags')

    def __init__(self, *, rounding=ROUND_GUARD_BIT, flags=0):
        '''rounding is one of the ROUND_ constants.  flags represents the initially raised
        flags.'''
        if rounding not in all_roundings:
            raise ValueError(f'unknown rounding mode {rounding!r}')
        self.rounding = rounding
        self.flags = flags

    def copy(self):
        '''Return a copy of the context.'''
        return Context(rounding=self.rounding, flags=self.flags)

    def __repr__(self):
        return f'<Context rounding={self.rounding} flags={self.flags!r}>'


# When bits are lost during rounding these indicate what fraction of the LSB the lost
# bits represented.  It combines the roles of the guard and sticky bits.
LF_EXACTLY_ZERO = 0           # 000000
LF_LESS_THAN_HALF = 1         # 0xxxxx  x's not all zero
LF_EXACTLY_HALF = 2           # 100000
LF_MORE_THAN_HALF = 3         # 1xxxxx  x's not all zero


class BinaryFormat(NamedTuple):
    '''An IEEE-754 binary interchange format.  Use the predefined constants or
    from_width().

    fmt_width is the total number of bits, e_width the width of the exponent field and
    frac_width the number of fraction bits stored after the binary point.  If
    explicit_int_bit is True the integer bit is stored before the fraction (as per Intel
    x87 extended precision numbers).
    '''

    fmt_width: int
    e_width: int
    frac_width: int
    explicit_int_bit: bool

    # A function of the values above
    e_bias: int
    e_max_biased: int

    @classmethod
    def from_layout(cls, e_width, frac_width, explicit_int_bit=False):
        '''Construct from the field widths.'''
        fmt_width = 1 + e_width + explicit_int_bit + frac_width
        e_bias = (1 << (e_width - 1)) - 1
        # The all-ones exponent is reserved for infinities and NaNs
        e_max_biased = (1 << e_width) - 2
        return cls(fmt_width, e_width, frac_width, explicit_int_bit, e_bias, e_max_biased)

    @classmethod
    def from_width(cls, fmt_width):
        '''The supported format for the given width.  Raises PrecisionError if there is
        none.'''
        if fmt_width is None:
            raise PrecisionError(None, fmt_width, 'missing precision for float conversion')
        fmt = None
        if isinstance(fmt_width, int) and not isinstance(fmt_width, bool):
            fmt = formats_by_width.get(fmt_width)
        if fmt is None:
            widths = ', '.join(str(width) for width in formats_by_width)
            raise PrecisionError(None, fmt_width,
                                 f'unsupported precision {fmt_width!r}; expected one of {widths}')
        return fmt

    @property
    def mantissa_width(self):
        '''The width of the mantissa field including any explicit integer bit.'''
        return self.frac_width + self.explicit_int_bit

    def __repr__(self):
        return (f'BinaryFormat(fmt_width={self.fmt_width}, e_width={self.e_width}, '
                f'frac_width={self.frac_width})')

    def encode(self, value, context=None):
        '''Return the encoding of value in this format as a string of '0' and '1'
        characters.'''
        return self.encode_fields(value, context).bits()

    def encode_fields(self, value, context=None):
        '''Return the encoding of value in this format as BitFields.

        value can be an int, float, Decimal, Fraction or a decimal string.  It must be
        finite and non-zero.  The fraction is rounded according to the context's
        rounding mode.'''
        context = context or get_context()
        self._check_magnitude(value, context)
        sign, int_part, frac_part = decompose(value)
        width = self.frac_width

        # Find the binary point and collect the fraction bits plus a guard bit
        int_bits = to_binary(int_part)
        if int_bits:
            exponent = len(int_bits) - 1
            self._check_exponent(exponent, value, context)
            bits = int_bits[1:width + 2]
            bits += frac_to_base(frac_part, 2, width + 1 - len(bits))
        else:
            digits = fraction_digits(frac_part)
            for j, digit in enumerate(digits):
                if j >= self.e_bias - 1:
                    self._check_exponent(-(j + 1), value, context)
                if digit == '1':
                    break
            exponent = -(j + 1)
            # The generator continues after the leading one
            bits = ''.join(islice(digits, width + 1))
        bits = bits.ljust(width + 1, '0')

        lost_fraction = self._lost_fraction(int_part + frac_part, exponent, bits)
        kept = bits[:width]
        if context.rounding == ROUND_GUARD_BIT:
            kept = kept[:-1] + bits[width]
        else:
            significand = int('1' + kept, 2)
            if round_up(context.rounding, lost_fraction, sign, bool(significand & 1)):
                significand += 1
                # If the significand now overflows, halve it and increment the exponent
                if significand >> (width + 1):
                    significand >>= 1
                    exponent += 1
                    self._check_exponent(exponent, value, context)
            kept = f'{significand:b}'[1:]

        is_inexact = lost_fraction != LF_EXACTLY_ZERO or kept != bits[:width]
        if is_inexact:
            context.flags |= Flags.INEXACT

        e_biased = exponent + self.e_bias
        integer = ''
        if self.explicit_int_bit:
            integer = '1' if e_biased else '0'
        fields = BitFields('1' if sign else '0', f'{e_biased:0{self.e_width}b}', integer, kept)
        logger.debug('%s in %d bits: exponent %d, %s', describe(value), self.fmt_width,
                     exponent, 'inexact' if is_inexact else 'exact')
        return fields

    def _check_exponent(self, exponent, value, context):
        '''Raise Overflow or Underflow if exponent cannot be stored for a normal number.'''
        e_biased = exponent + self.e_bias
        if e_biased > self.e_max_biased:
            context.flags |= Flags.OVERFLOW
            raise Overflow(value, self, f'{describe(value)} is too large for a '
                           f'{self.fmt_width}-bit float (exponent {exponent:,d})')
        if e_biased < 1:
            context.flags |= Flags.UNDERFLOW
            raise Underflow(value, self, f'{describe(value)} is too small for a '
                            f'{self.fmt_width}-bit float (exponent {exponent:,d})')

    def _check_magnitude(self, value, context):
        '''Raise Overflow or Underflow for values obviously outside the exponent range, before
        their digits are expanded.  Values near the limits are left to the exact check.'''
        if isinstance(value, bool):
            return
        if isinstance(value, int):
            if not value:
                return
            low = high = abs(value).bit_length() - 1
        elif isinstance(value, Fraction):
            if not value:
                return
            size = abs(value.numerator).bit_length() - value.denominator.bit_length()
            # 2^(size - 1) < |value| < 2^(size + 1)
            low, high = size - 1, size
        elif isinstance(value, (Decimal, str)):
            if isinstance(value, str) and not DEC_FLOAT_REGEX.match(value):
                return
            number = Decimal(value)
            if not number.is_finite() or not number:
                return
            # 10^adjusted <= |number| < 10^(adjusted + 1); allow a bit for float error
            adjusted = number.adjusted()
            low = floor(adjusted * log2_10) - 1
            high = ceil((adjusted + 1) * log2_10)
        else:
            # Floats and unsupported types are cheap to decompose
            return

        if low > self.e_max_biased - self.e_bias:
            self._check_exponent(low, value, context)
        if high < 1 - self.e_bias:
            self._check_exponent(high, value, context)

    def _lost_fraction(self, magnitude, exponent, bits):
        '''Return the LF_ constant describing what truncating the exact magnitude to the
        fraction bits loses.  The last of bits is the guard bit.'''
        retained = int('1' + bits, 2)
        shift = exponent - len(bits)
        if shift >= 0:
            retained <<= shift
        else:
            retained = Fraction(retained, 1 << -shift)
        first_bit = bits[-1] == '1'
        second_bit = magnitude != retained
        return first_bit * 2 + second_bit


#
# Helper routines
#

def decompose(value):
    '''Return a (sign, int_part, frac_part) triple for a finite non-zero value.  sign is
    True for negative values, int_part is the integer part of the magnitude as an int and
    frac_part its fractional part as a Fraction.

    Raises TypeError for unsupported types and UnsupportedValue for zeroes, infinities,
    NaNs and malformed strings.'''
    if isinstance(value, Fraction):
        sign = value < 0
        magnitude = abs(value)
        int_part = magnitude.numerator // magnitude.denominator
        frac_part = magnitude - int_part
    else:
        fixed = to_fixed_point(value)
        sign = fixed[0] == '-'
        int_str, _, frac_str = fixed.lstrip('-').partition('.')
        # Decimal avoids the limit on converting long digit strings to int
        int_part = int(Decimal(int_str))
        frac_part = Fraction(Decimal('0.' + (frac_str or '0')))

    if not (int_part or frac_part):
        zero = 'negative zero' if sign else 'zero'
        raise UnsupportedValue(value, None, f'cannot encode {zero}')
    return sign, int_part, frac_part


def describe(value):
    '''Return repr(value), abbreviating integers too long to convert to a string.'''
    if isinstance(value, int) and value.bit_length() > 4096:
        return f'<{value.bit_length():,d}-bit integer>'
    return repr(value)


def to_fixed_point(value):
    '''Return the exact value of value as a decimal string without an exponent, for
    example 2.5e-3 becomes '0.0025'.  value can be an int, float, Decimal or decimal
    string.'''
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise TypeError(f'cannot encode values of type {type(value).__name__}')
    if isinstance(value, str) and not DEC_FLOAT_REGEX.match(value):
        raise UnsupportedValue(value, None, f'invalid decimal number: {value!r}')

    # Conversion of floats to Decimal is exact
    number = Decimal(value)
    if not number.is_finite():
        raise UnsupportedValue(value, None, f'cannot encode non-finite value {value!r}')
    return format(number, 'f')


def to_binary(n):
    '''Return the binary digits of the non-negative integer n without leading zeroes.  The
    digits of zero are the empty string.'''
    if not isinstance(n, int):
        raise TypeError('to_binary requires an integer')
    if n < 0:
        raise ValueError(f'cannot convert negative integer {n:,d}')
    return f'{n:b}' if n else ''


def fraction_digits(n, base=2):
    '''Yield the digits after the point of n, where 0 <= n < 1, in the given base.

    Each digit is the integer part of n multiplied by the base, which is then subtracted.
    The generator stops when nothing remains, which never happens for fractions without
    a finite expansion in the base.'''
    if not 2 <= base <= 36:
        raise ValueError(f'base must be between 2 and 36: {base}')
    n = Fraction(n)
    if not 0 <= n < 1:
        raise ValueError(f'fraction must be in [0, 1): {n}')
    while n:
        n *= base
        digit = n.numerator // n.denominator
        yield DIGITS[digit]
        n -= digit


def frac_to_base(n, base=2, limit=None):
    '''Return the digits after the point of n, where 0 <= n < 1, in the given base as a
    string.  At most limit digits are produced if limit is not None.'''
    return ''.join(islice(fraction_digits(n, base), limit))


def round_up(rounding, lost_fraction, sign, is_odd):
    '''Return True if, when bits are lost, the significand should be rounded up (i.e.,
    away from zero by incrementing it).

    sign is the sign of the number, and is_odd indicates if the LSB of the new
    significand is set, which is needed for ties-to-even rounding.
    '''
    if lost_fraction == LF_EXACTLY_ZERO:
        return False

    if rounding == ROUND_HALF_EVEN:
        if lost_fraction == LF_EXACTLY_HALF:
            return is_odd
        else:
            return lost_fraction == LF_MORE_THAN_HALF
    elif rounding == ROUND_CEILING:
        return not sign
    elif rounding == ROUND_FLOOR:
        return sign
    elif rounding == ROUND_DOWN:
        return False
    elif rounding == ROUND_UP:
        return True
    elif rounding == ROUND_HALF_DOWN:
        return lost_fraction == LF_MORE_THAN_HALF
    else:
        return lost_fraction != LF_LESS_THAN_HALF


#
# Exported functions
#

DefaultContext = Context()
tls = threading.local()


def get_context():
    try:
        return tls.context
    except AttributeError:
        tls.context = DefaultContext.copy()
        return tls.context


def set_context(context):
    '''Sets the current thread's context to context (not a copy of it).'''
    tls.context = context


class LocalContext:
    '''A context manager that will set the current context for the active thread to a copy of
    context on entry to the with-statement and restore the previous context on exit.  If
    no context is specified a copy of the current context is taken instead.
    '''

    def __init__(self, context=None):
        self.saved_context = None
        self.context_to_set = context

    def __enter__(self):
        self.saved_context = get_context()
        context = (self.context_to_set or self.saved_context).copy()
        set_context(context)
        return context

    def __exit__(self, etype, value, traceback):
        set_context(self.saved_context)


local_context = LocalContext


def encode(value, precision, context=None):
    '''Return the IEEE-754 encoding of value as a string of precision '0' and '1'
    characters.  precision must be 16, 32, 64 or 80.'''
    return BinaryFormat.from_width(precision).encode(value, context)


#
# Command line
#

rounding_names = {
    'guard-bit': ROUND_GUARD_BIT,
    'half-even': ROUND_HALF_EVEN,
    'half-up': ROUND_HALF_UP,
    'half-down': ROUND_HALF_DOWN,
    'ceiling': ROUND_CEILING,
    'floor': ROUND_FLOOR,
    'down': ROUND_DOWN,
    'up': ROUND_UP,
}

options_with_values = {'-p', '--precision', '--rounding', '-s', '--separator'}


def partition_args(args):
    '''Return args with the options first, then '--', then the values.

    Values can have a negative sign in front, which argparse takes for an option unless
    they look like simple numbers.  Anything starting with '-' that has a digit or a
    point after the sign, or is an infinity or NaN, is taken as a value.'''
    options = []
    values = []
    args = iter(args)
    for arg in args:
        if arg == '--':
            values.extend(args)
            break
        if arg.startswith('-') and not NEGATIVE_VALUE_REGEX.match(arg):
            options.append(arg)
            if arg in options_with_values:
                option_value = next(args, None)
                if option_value is not None:
                    options.append(option_value)
        else:
            values.append(arg)
    return options + ['--'] + values


def parse_args(args):
    parser = argparse.ArgumentParser(
        prog='floatbits', description='Show the IEEE-754 binary encoding of decimal values.')
    parser.add_argument('values', nargs='+', metavar='VALUE', help='values to encode')
    widths = parser.add_mutually_exclusive_group()
    widths.add_argument('-H', '--half', action='store_const', dest='precision', const=16,
                        help='half precision (IEEE binary16)')
    widths.add_argument('-f', '--single', action='store_const', dest='precision', const=32,
                        help='single precision (IEEE binary32, the default)')
    widths.add_argument('-d', '--double', action='store_const', dest='precision', const=64,
                        help='double precision (IEEE binary64)')
    widths.add_argument('-L', '--extended', action='store_const', dest='precision', const=80,
                        help='Intel 80-bit extended precision')
    widths.add_argument('-p', '--precision', type=int, dest='precision',
                        help='format width in bits')
    parser.set_defaults(precision=32)
    parser.add_argument('--rounding', choices=list(rounding_names), default='guard-bit',
                        help='how to round lost fraction bits (default: %(default)s)')
    parser.add_argument('--hex', action='store_true', help='output hexadecimal')
    parser.add_argument('-s', '--separator', default='',
                        help='text placed between the fields of bit output')
    parser.add_argument('-v', '--verbose', action='store_true', help='log debug output')

    options = parser.parse_args(partition_args(args))
    try:
        options.fmt = BinaryFormat.from_width(options.precision)
    except PrecisionError as e:
        parser.error(str(e))
    return options


def main(args=None):
    '''Encode each value on the command line, writing one line per value.  Returns the exit
    status: 1 if any value could not be encoded.'''
    options = parse_args(sys.argv[1:] if args is None else args)
    if options.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(name)s: %(message)s')

    if options.hex:
        text_format = DefaultHexFormat
    else:
        text_format = TextFormat(separator=options.separator)

    status = 0
    with local_context(Context(rounding=rounding_names[options.rounding])) as context:
        for value in options.values:
            try:
                fields = options.fmt.encode_fields(value, context)
            except EncodeError as e:
                print(f'floatbits: {e}', file=sys.stderr)
                status = 1
            else:
                print(text_format.format_fields(fields))
    return status


#
# Constants are predefined formats.
#

log2_10 = log2(10)
host_endianness = sys.byteorder

IEEEhalf = BinaryFormat.from_layout(5, 10)
IEEEsingle = BinaryFormat.from_layout(8, 23)
IEEEdouble = BinaryFormat.from_layout(11, 52)
# 80387 extended precision has an explicit integer bit.
x87extended = BinaryFormat.from_layout(15, 63, True)

formats_by_width = {fmt.fmt_width: fmt for fmt in (IEEEhalf, IEEEsingle, IEEEdouble,
                                                   x87extended)}

DIGITS = '0123456789abcdefghijklmnopqrstuvwxyz'

DEC_FLOAT_REGEX = re.compile(
    # sign[opt]
    '[-+]?('
    # (dec-integer[opt].fraction or dec-integer.[opt])
    '(([0-9]*)\\.([0-9]+)|([0-9]+)\\.?)'
    # e sign[opt]dec-exponent   [opt]
    '(e([-+]?[0-9]+))?|'
    # inf or infinity
    '(inf(inity)?)|'
    # nan or snan
    '(s?nan))$',
    re.ASCII | re.IGNORECASE
)
NEGATIVE_VALUE_REGEX = re.compile('-(\\.?[0-9]|inf|s?nan)', re.ASCII | re.IGNORECASE)


if __name__ == '__main__':
    sys.exit(main())

''' Wrapper module to handle the equivalent of :func:`json.loads` and
    :func:`json.dumps` with msgspec, the most performant library available.
'''

# The msgspec 'encode' operation returns bytes; 'decode' accepts bytes or
# str. Every caller in warren expects bytes on the way out.

import msgspec


encoder = msgspec.json.Encoder()
decoder = msgspec.json.Decoder()
dumps = encoder.encode
loads = decoder.decode
DecodeError = msgspec.DecodeError

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:

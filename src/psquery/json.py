''' Wrapper module for the JSON handling used on the wire. Every 'dumps'
    call returns bytes, and 'loads' accepts either bytes or str.
'''

import orjson


# orjson refuses dictionaries with non-string keys, and anything else it
# does not know how to represent; both surface as a TypeError subclass.

JSONDecodeError = orjson.JSONDecodeError
JSONEncodeError = orjson.JSONEncodeError

dumps = orjson.dumps
loads = orjson.loads

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:

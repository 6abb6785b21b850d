"""
Message-level support for the parade proxy and service layer: argument
tuples typed against D-Bus signatures, interface descriptions, the
contract expected of a message-bus connection, and a complete
in-process implementation of that contract.

Signature parsing, Variant values, name validation and introspection
XML all come from dbus-next; this module packages them the way parade
uses them. A method call’s arguments, or a reply’s results, travel as
a WireTuple: a signature string plus the list of values it describes,
built with encode() and taken apart with decode(). A Bus hands out
connections that exchange method calls, replies and signals on an
asyncio event loop.
"""
#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz> (DBUS definitions and DBusError).
# Copyright 2026 the Satie contributors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import logging
import asyncio
from weakref import \
    WeakSet
import xml.etree.ElementTree as XMLElementTree
from dbus_next import \
    validators, \
    introspection as intr
from dbus_next.constants import \
    PropertyAccess
from dbus_next.errors import \
    InvalidSignatureError, \
    SignatureBodyMismatchError
from dbus_next.signature import \
    SignatureTree, \
    SignatureType, \
    Variant

_logger = logging.getLogger(__name__)

class DBUS :
    "useful definitions adapted from the D-Bus includes, for use with the" \
    " rest of this module and with parade."

    MAXIMUM_SIGNATURE_LENGTH = 255 # fits in a byte

    MAXIMUM_TYPE_RECURSION_DEPTH = 32

    # Errors
    ERROR_FAILED = "org.freedesktop.DBus.Error.Failed" # generic error
    ERROR_SERVICE_UNKNOWN = "org.freedesktop.DBus.Error.ServiceUnknown"
    ERROR_NO_REPLY = "org.freedesktop.DBus.Error.NoReply"
    ERROR_ACCESS_DENIED = "org.freedesktop.DBus.Error.AccessDenied"
    ERROR_DISCONNECTED = "org.freedesktop.DBus.Error.Disconnected"
    ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
    ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
    ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
    ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
    ERROR_UNKNOWN_PROPERTY = "org.freedesktop.DBus.Error.UnknownProperty"
    ERROR_PROPERTY_READ_ONLY = "org.freedesktop.DBus.Error.PropertyReadOnly"
    ERROR_INVALID_SIGNATURE = "org.freedesktop.DBus.Error.InvalidSignature"
    ERROR_OBJECT_PATH_IN_USE = "org.freedesktop.DBus.Error.ObjectPathInUse"

    # Interfaces
    INTERFACE_PROPERTIES = "org.freedesktop.DBus.Properties" # interface supported by objects with properties

    # Owner flags for request_name
    NAME_FLAG_ALLOW_REPLACEMENT = 0x1
    NAME_FLAG_REPLACE_EXISTING = 0x2
    NAME_FLAG_DO_NOT_QUEUE = 0x4

    # Replies to request for a name
    REQUEST_NAME_REPLY_PRIMARY_OWNER = 1
    REQUEST_NAME_REPLY_IN_QUEUE = 2
    REQUEST_NAME_REPLY_EXISTS = 3
    REQUEST_NAME_REPLY_ALREADY_OWNER = 4

    # Replies to releasing a name
    RELEASE_NAME_REPLY_RELEASED = 1
    RELEASE_NAME_REPLY_NON_EXISTENT = 2
    RELEASE_NAME_REPLY_NOT_OWNER = 3

    # method-call flags
    CALL_FLAG_NONE = 0
    CALL_FLAG_NO_AUTO_START = 0x1
    CALL_FLAG_ALLOW_INTERACTIVE_AUTHORIZATION = 0x2

    # timeouts, otherwise given in seconds
    TIMEOUT_INFINITE = 0x7fffffff
    TIMEOUT_USE_DEFAULT = -1

#end DBUS

class SATIE :
    "definitions specific to this binding."

    ERROR_PREFIX = "org.satie.PyError." # prepended to undotted handler exception names
    ERROR_VALUE = ERROR_PREFIX + "ValueError" # handler result did not fit out signature
    ERROR_NOT_IMPLEMENTED = "org.satie.NotImplementedError" # no handler for method
    ERROR_CANCELLED = "org.satie.Error.Cancelled" # call withdrawn via a Cancellable

#end SATIE

ACCESS = PropertyAccess # READ, WRITE or READWRITE, with readable() and writable() tests

#+
# Exceptions
#-

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message." \
    " Errors returned from the other end of a connection are raised as these, and a" \
    " method handler can raise one to choose the error name sent back to the caller."

    def __init__(self, name, message) :
        self.name = name
        self.message = message
        self.args = ("%s -- %s" % (name, message),)
    #end __init__

#end DBusError

class TypeMismatchError(TypeError) :
    "a value is not of a kind acceptable in the position where it was passed."
    pass
#end TypeMismatchError

class EncodingError(TypeMismatchError) :
    "a value cannot be encoded according to its declared type signature."
    pass
#end EncodingError

class ArityError(TypeError) :
    "wrong number of arguments passed to a method call."
    pass
#end ArityError

#+
# Name validation
#-

def _check_name(valid, kind, name) :
    if not valid(name) :
        raise DBusError(DBUS.ERROR_INVALID_ARGS, "invalid %s “%s”" % (kind, name))
    #end if
    return \
        True
#end _check_name

def validate_path(path) :
    return \
        _check_name(validators.is_object_path_valid, "object path", path)
#end validate_path

def validate_interface(name) :
    return \
        _check_name(validators.is_interface_name_valid, "interface name", name)
#end validate_interface

def validate_error_name(name) :
    # error names follow the same rules as interface names
    return \
        _check_name(validators.is_interface_name_valid, "error name", name)
#end validate_error_name

def validate_member(name) :
    return \
        _check_name(validators.is_member_name_valid, "member name", name)
#end validate_member

def validate_bus_name(name) :
    return \
        _check_name(validators.is_bus_name_valid, "bus name", name)
#end validate_bus_name

#+
# Type signatures
#-

def _type_depth(sigtype) :
    return \
        1 + max((_type_depth(child) for child in sigtype.children), default = 0)
#end _type_depth

def _parse_tree(signature) :
    # returns the SignatureTree for a signature string, with the limits on
    # length and nesting enforced. Raises ValueError if malformed.
    if not isinstance(signature, str) :
        raise TypeError("signature must be a string")
    #end if
    if len(signature) > DBUS.MAXIMUM_SIGNATURE_LENGTH :
        raise ValueError("signature too long: %d characters" % len(signature))
    #end if
    try :
        tree = SignatureTree(str(signature))
    except InvalidSignatureError as err :
        raise ValueError("invalid signature “%s”: %s" % (signature, err))
    #end try
    for sigtype in tree.types :
        if _type_depth(sigtype) > DBUS.MAXIMUM_TYPE_RECURSION_DEPTH :
            raise ValueError("signature “%s” nested too deeply" % signature)
        #end if
    #end for
    return \
        tree
#end _parse_tree

def parse_signature(signature) :
    "parses a signature string into a list of dbus_next SignatureType objects," \
    " one per complete type. A SignatureType or a sequence of them is passed" \
    " through. Raises ValueError if the signature is malformed."
    if isinstance(signature, SignatureType) :
        result = [signature]
    elif isinstance(signature, (list, tuple)) :
        if not all(isinstance(t, SignatureType) for t in signature) :
            raise TypeError("signature sequence must contain only SignatureTypes")
        #end if
        result = list(signature)
    else :
        result = list(_parse_tree(signature).types)
    #end if
    return \
        result
#end parse_signature

def parse_single_signature(signature) :
    "parses a signature that must consist of exactly one complete type."
    result = parse_signature(signature)
    if len(result) != 1 :
        raise ValueError("signature “%s” is not a single complete type" % unparse_signature(result))
    #end if
    return \
        result[0]
#end parse_single_signature

def unparse_signature(signature) :
    "converts a SignatureType or sequence of SignatureTypes back to signature-string form."
    return \
        "".join(t.signature for t in parse_signature(signature))
#end unparse_signature

#+
# Typed values
#-

def _canonical(sigtype, value) :
    # converts the Python sequence types that are natural to write for
    # arrays and structs into the lists dbus_next expects; everything else
    # is passed through for dbus_next to check.
    token = sigtype.token
    if token == "a" :
        elttype = sigtype.children[0]
        if elttype.token == "y" and isinstance(value, bytearray) :
            result = bytes(value)
        elif elttype.token == "{" and isinstance(value, dict) :
            keytype, valuetype = elttype.children
            result = dict \
              (
                (_canonical(keytype, key), _canonical(valuetype, val))
                for key, val in value.items()
              )
        elif elttype.token not in ("y", "{") and isinstance(value, (list, tuple)) :
            result = list(_canonical(elttype, elt) for elt in value)
        else :
            result = value
        #end if
    elif token == "(" and isinstance(value, (list, tuple)) :
        if len(value) == len(sigtype.children) :
            result = list(_canonical(t, v) for t, v in zip(sigtype.children, value))
        else :
            result = list(value) # wrong length, left for verify to report
        #end if
    else :
        result = value
    #end if
    return \
        result
#end _canonical

def make_variant(signature, value) :
    "returns a Variant holding value, which is checked against the given" \
    " single-type signature (string or SignatureType) after converting tuples" \
    " to the lists dbus_next uses for arrays and structs. Raises EncodingError" \
    " if the value does not fit."
    sigtype = parse_single_signature(signature)
    try :
        result = Variant(sigtype, _canonical(sigtype, value))
    except SignatureBodyMismatchError as err :
        raise EncodingError(str(err))
    #end try
    return \
        result
#end make_variant

class WireTuple :
    "the ordered, signature-typed arguments of one method call, reply or signal." \
    " signature is the concatenation of the signatures of the individual items," \
    " body the list of their values in dbus_next form: lists for arrays and" \
    " structs, bytes for byte arrays, dicts for dict arrays, Variant objects" \
    " for variants. Normally built with encode(). Treated as immutable."

    __slots__ = ("signature", "body") # to forestall typos

    def __init__(self, signature, body) :
        tree = _parse_tree(signature)
        if not isinstance(body, (list, tuple)) :
            raise EncodingError("sequence of values expected, got %s" % type(body).__name__)
        #end if
        if len(body) != len(tree.types) :
            raise EncodingError \
              (
                    "signature “%s” needs %d values, got %d"
                %
                    (signature, len(tree.types), len(body))
              )
        #end if
        body = list(_canonical(t, v) for t, v in zip(tree.types, body))
        try :
            tree.verify(body)
        except SignatureBodyMismatchError as err :
            raise EncodingError(str(err))
        #end try
        self.signature = tree.signature
        self.body = body
    #end __init__

    def unpack(self) :
        "returns the values as a tuple. Nested variants stay Variant objects."
        return \
            tuple(self.body)
    #end unpack

    def __eq__(self, other) :
        return \
            (
                isinstance(other, WireTuple)
            and
                self.signature == other.signature
            and
                self.body == other.body
            )
    #end __eq__

    __hash__ = None

    def __len__(self) :
        return \
            len(self.body)
    #end __len__

    def __repr__(self) :
        return \
            "%s(%s, %s)" % (type(self).__name__, repr(self.signature), repr(self.body))
    #end __repr__

#end WireTuple

def encode(signature, values) :
    "packs the sequence of native values into a WireTuple with the given signature," \
    " raising EncodingError if they do not fit."
    return \
        WireTuple(signature, values)
#end encode

def decode(wire) :
    "unpacks a WireTuple into a tuple of values."
    if not isinstance(wire, WireTuple) :
        raise TypeError("wire must be a WireTuple")
    #end if
    return \
        wire.unpack()
#end decode

#+
# Interface descriptions
#-

class Interface(intr.Interface) :
    "description of the methods, properties and signals of a D-Bus interface," \
    " made up of dbus_next introspection Method, Property and Signal objects." \
    " Build one directly, or from introspection XML with Interface.parse(). The" \
    " description is not meant to be changed once constructed."

    def __init__(self, name, methods = (), signals = (), properties = ()) :
        validate_interface(name)
        super().__init__(name, methods = list(methods), signals = list(signals), properties = list(properties))
        self.methods = tuple(self.methods)
        self.signals = tuple(self.signals)
        self.properties = tuple(self.properties)
        self._methods = self._table(self.methods, intr.Method, "method")
        self._signals = self._table(self.signals, intr.Signal, "signal")
        self._properties = self._table(self.properties, intr.Property, "property")
    #end __init__

    def _table(self, items, elttype, kind) :
        result = {}
        for item in items :
            if not isinstance(item, elttype) :
                raise TypeError("expecting %s, got %s" % (elttype.__name__, type(item).__name__))
            #end if
            if item.name in result :
                raise ValueError("duplicate %s name “%s” in interface %s" % (kind, item.name, self.name))
            #end if
            result[item.name] = item
        #end for
        return \
            result
    #end _table

    def lookup_method(self, name) :
        "returns the Method with the given name, or None if there isn’t one."
        return \
            self._methods.get(name)
    #end lookup_method

    def lookup_property(self, name) :
        "returns the Property with the given name, or None if there isn’t one."
        return \
            self._properties.get(name)
    #end lookup_property

    def lookup_signal(self, name) :
        "returns the Signal with the given name, or None if there isn’t one."
        return \
            self._signals.get(name)
    #end lookup_signal

    def __repr__(self) :
        return \
            (
                "%s(name = %s, %d methods, %d properties, %d signals)"
            %
                (type(self).__name__, repr(self.name), len(self.methods), len(self.properties), len(self.signals))
            )
    #end __repr__

    @classmethod
    def parse(celf, xml) :
        "builds an Interface from an introspection XML string. This may be a single" \
        " <interface> element, or a <node> element, in which case its first" \
        " interface is used. Raises ValueError if the XML is not a valid description."
        try :
            root = XMLElementTree.fromstring(xml)
        except XMLElementTree.ParseError as err :
            raise ValueError("invalid introspection XML: %s" % err)
        #end try
        if root.tag == "node" :
            elt = root.find("interface")
            if elt == None :
                raise ValueError("no <interface> in introspection XML")
            #end if
        elif root.tag == "interface" :
            elt = root
        else :
            raise ValueError("unexpected <%s> element in introspection XML" % root.tag)
        #end if
        try :
            parsed = intr.Interface.from_xml(elt)
        except (TypeError, ValueError) as err :
            # dbus_next reports bad names and introspection data as TypeErrors
            raise ValueError("invalid introspection XML: %s" % err)
        #end try
        return \
            celf \
              (
                parsed.name,
                methods = parsed.methods,
                signals = parsed.signals,
                properties = parsed.properties
              )
    #end parse

#end Interface

#+
# Call-completion objects
#-

class Cancellable :
    "a token that can be passed with a call to allow it to be withdrawn before" \
    " it completes. Call cancel() to trigger it."

    __slots__ = ("_cancelled", "_callbacks", "_next_id")

    def __init__(self) :
        self._cancelled = False
        self._callbacks = {}
        self._next_id = 1
    #end __init__

    @property
    def cancelled(self) :
        return \
            self._cancelled
    #end cancelled

    def connect(self, func) :
        "arranges for func() to be called on cancellation, returning an id for" \
        " use with disconnect(). If already cancelled, func is called immediately" \
        " and the result is 0."
        if self._cancelled :
            func()
            result = 0
        else :
            result = self._next_id
            self._next_id += 1
            self._callbacks[result] = func
        #end if
        return \
            result
    #end connect

    def disconnect(self, id) :
        self._callbacks.pop(id, None)
    #end disconnect

    def cancel(self) :
        if not self._cancelled :
            self._cancelled = True
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            for func in callbacks :
                func()
            #end for
        #end if
    #end cancel

#end Cancellable

class PendingCall :
    "represents a method call that has been sent without waiting for the reply." \
    " Do not instantiate directly; obtained from Connection.send_with_reply()." \
    " Use set_notify() to be told of completion, or await the await_reply()" \
    " coroutine."

    __slots__ = \
        (
            "method", "args", "cancellable",
            "_loop", "_reply", "_error", "_completed", "_cancelled",
            "_notify", "_notified", "_waiters", "_cancel_id", "_timer", "__weakref__",
        ) # to forestall typos

    def __init__(self, loop, method, args, cancellable = None) :
        self.method = method
        self.args = args
        self.cancellable = cancellable
        self._loop = loop
        self._reply = None
        self._error = None
        self._completed = False
        self._cancelled = False
        self._notify = None
        self._notified = False
        self._waiters = []
        self._cancel_id = None
        self._timer = None
        if cancellable != None :
            self._cancel_id = cancellable.connect(self.cancel)
        #end if
    #end __init__

    @property
    def completed(self) :
        return \
            self._completed
    #end completed

    @property
    def cancelled(self) :
        return \
            self._cancelled
    #end cancelled

    def _complete(self, reply, error) :
        # called by the transport with the outcome of the call. Only the
        # first outcome counts; nothing is reported after cancellation.
        if not self._completed and not self._cancelled :
            self._completed = True
            self._reply = reply
            self._error = error
            self._detach()
            for waiter in self._waiters :
                if not waiter.done() :
                    if error != None :
                        waiter.set_exception(error)
                    else :
                        waiter.set_result(reply)
                    #end if
                #end if
            #end for
            self._waiters = []
            if self._notify != None :
                self._loop.call_soon(self._fire)
            #end if
        #end if
    #end _complete

    def _detach(self) :
        if self.cancellable != None and self._cancel_id != None :
            self.cancellable.disconnect(self._cancel_id)
            self._cancel_id = None
        #end if
        if self._timer != None :
            self._timer.cancel()
            self._timer = None
        #end if
    #end _detach

    def _fire(self) :
        if not self._notified and not self._cancelled :
            self._notified = True
            try :
                self._notify(self._reply, self._error)
            except Exception :
                _logger.exception("exception in completion routine for method %s", self.method)
            #end try
        #end if
    #end _fire

    def set_notify(self, function) :
        "function(reply, error) will be invoked exactly once from the event loop" \
        " when the call completes: reply is the reply WireTuple and error None on" \
        " success, or reply None and error a DBusError on failure. It is never" \
        " invoked if the call is cancelled first."
        if self._notified :
            raise RuntimeError("completion already notified")
        #end if
        self._notify = function
        if self._completed :
            self._loop.call_soon(self._fire)
        #end if
    #end set_notify

    def cancel(self) :
        "withdraws the call if it has not yet completed."
        if not self._completed and not self._cancelled :
            self._cancelled = True
            self._detach()
            for waiter in self._waiters :
                waiter.cancel()
            #end for
            self._waiters = []
            _logger.debug("call to %s cancelled", self.method)
        #end if
    #end cancel

    def steal_reply(self) :
        "returns the reply WireTuple of a completed call, or raises its error."
        if not self._completed :
            raise RuntimeError("call has not completed")
        #end if
        if self._error != None :
            raise self._error
        #end if
        return \
            self._reply
    #end steal_reply

    async def await_reply(self) :
        "waits for and returns the reply WireTuple, raising the error if the call failed."
        if self._completed :
            result = self.steal_reply()
        else :
            if self._cancelled :
                raise asyncio.CancelledError("call to %s was cancelled" % self.method)
            #end if
            waiter = self._loop.create_future()
            self._waiters.append(waiter)
            result = await waiter
        #end if
        return \
            result
    #end await_reply

#end PendingCall

class MethodInvocation :
    "the reply handle for one incoming method call. Exactly one of return_value()," \
    " return_dbus_error() or return_error() must eventually be called."

    __slots__ = \
        (
            "connection", "sender", "path", "interface_name", "method_name",
            "parameters", "method_info", "_reply_func", "_replied",
        )

    def __init__(self, *, connection, sender, path, interface_name, method_name, parameters, method_info, reply_func) :
        self.connection = connection
        self.sender = sender
        self.path = path
        self.interface_name = interface_name
        self.method_name = method_name
        self.parameters = parameters
        self.method_info = method_info
        self._reply_func = reply_func
        self._replied = False
    #end __init__

    @property
    def replied(self) :
        return \
            self._replied
    #end replied

    def _send(self, reply, error) :
        if self._replied :
            raise RuntimeError("reply to %s already sent" % self.method_name)
        #end if
        self._replied = True
        self._reply_func(reply, error)
    #end _send

    def return_value(self, value) :
        "sends a successful reply. value must be a WireTuple matching the method’s" \
        " out signature, or None for a method with no out args."
        if value == None :
            value = WireTuple("", [])
        #end if
        if not isinstance(value, WireTuple) :
            raise TypeError("reply value must be a WireTuple")
        #end if
        if self.method_info != None :
            expected = self.method_info.out_signature
            if value.signature != expected :
                _logger.warning \
                  (
                    "reply to %s has type “%s”, expected “%s”",
                    self.method_name, value.signature, expected
                  )
                self.return_dbus_error \
                  (
                    DBUS.ERROR_INVALID_ARGS,
                    "type of return value is incorrect: got “%s”, expected “%s”" % (value.signature, expected)
                  )
                return
            #end if
        #end if
        self._send(value, None)
    #end return_value

    def return_dbus_error(self, name, message) :
        "sends an error reply with the given name and message."
        self._send(None, DBusError(name, message))
    #end return_dbus_error

    def return_error(self, error) :
        "sends an error reply describing the given exception."
        if not isinstance(error, DBusError) :
            error = DBusError(DBUS.ERROR_FAILED, str(error))
        #end if
        self._send(None, error)
    #end return_error

#end MethodInvocation

#+
# Connections
#-

class Connection :
    "the operations the proxy and service layers require of a message-bus" \
    " connection. Subclasses implement these over some actual transport; see" \
    " LocalConnection for an in-process one.\n" \
    "\n" \
    "Objects registered with register_object() must provide the methods\n" \
    "\n" \
    "    handle_method_call(«invocation»)\n" \
    "    handle_get_property(«name») -> Variant or None\n" \
    "    handle_set_property(«name», «value»)\n" \
    "\n" \
    "which are called for incoming method calls and property accesses."

    @property
    def loop(self) :
        raise NotImplementedError("subclass forgot to override loop property")
    #end loop

    @property
    def unique_name(self) :
        raise NotImplementedError("subclass forgot to override unique_name property")
    #end unique_name

    def send_with_reply_and_block(self, *, destination, path, interface, method, args, flags = DBUS.CALL_FLAG_NONE, timeout = DBUS.TIMEOUT_USE_DEFAULT, cancellable = None) :
        "sends a method call and waits for the reply, returning the reply" \
        " WireTuple or raising a DBusError."
        raise NotImplementedError("subclass forgot to override send_with_reply_and_block method")
    #end send_with_reply_and_block

    def send_with_reply(self, *, destination, path, interface, method, args, flags = DBUS.CALL_FLAG_NONE, timeout = DBUS.TIMEOUT_USE_DEFAULT, cancellable = None) :
        "sends a method call without waiting, returning a PendingCall."
        raise NotImplementedError("subclass forgot to override send_with_reply method")
    #end send_with_reply

    def register_object(self, path, interface, vtable) :
        "exports vtable as the implementation of the Interface at path, returning" \
        " a registration id."
        raise NotImplementedError("subclass forgot to override register_object method")
    #end register_object

    def unregister_object(self, registration_id) :
        raise NotImplementedError("subclass forgot to override unregister_object method")
    #end unregister_object

    def emit_signal(self, *, destination = None, path, interface, name, args) :
        "broadcasts (or unicasts if destination is given) a signal; args is a" \
        " WireTuple, or None for a signal with no args."
        raise NotImplementedError("subclass forgot to override emit_signal method")
    #end emit_signal

    def signal_subscribe(self, *, sender = None, interface = None, member = None, path = None, func) :
        "arranges for func(connection, sender, path, interface, member, args) to" \
        " be called for matching signals. Returns a subscription id."
        raise NotImplementedError("subclass forgot to override signal_subscribe method")
    #end signal_subscribe

    def signal_unsubscribe(self, subscription_id) :
        raise NotImplementedError("subclass forgot to override signal_unsubscribe method")
    #end signal_unsubscribe

    def request_name(self, name, flags) :
        raise NotImplementedError("subclass forgot to override request_name method")
    #end request_name

    def release_name(self, name) :
        raise NotImplementedError("subclass forgot to override release_name method")
    #end release_name

    def own_name(self, name, flags, acquired, lost) :
        raise NotImplementedError("subclass forgot to override own_name method")
    #end own_name

    def unown_name(self, owner_id) :
        raise NotImplementedError("subclass forgot to override unown_name method")
    #end unown_name

    def watch_name(self, name, appeared, vanished) :
        raise NotImplementedError("subclass forgot to override watch_name method")
    #end watch_name

    def unwatch_name(self, watcher_id) :
        raise NotImplementedError("subclass forgot to override unwatch_name method")
    #end unwatch_name

    def close(self) :
        raise NotImplementedError("subclass forgot to override close method")
    #end close

#end Connection

class Bus :
    "an in-process message bus. Connections obtained from connect() can own" \
    " names, export objects, make method calls to each other and exchange" \
    " signals, with all asynchronous deliveries going through the given" \
    " asyncio event loop. default_timeout (seconds, or DBUS.TIMEOUT_INFINITE)" \
    " applies to calls made with DBUS.TIMEOUT_USE_DEFAULT."

    def __init__(self, loop = None, default_timeout = DBUS.TIMEOUT_INFINITE) :
        if loop == None :
            try :
                loop = asyncio.get_running_loop()
            except RuntimeError :
                loop = asyncio.new_event_loop()
            #end try
        #end if
        self.loop = loop
        self.default_timeout = default_timeout
        self._connections = {} # unique name => LocalConnection
        self._names = {} # well-known name => list of [connection, flags], owner first
        self._next_id = 1
    #end __init__

    def connect(self) :
        "returns a new LocalConnection to this bus."
        unique_name = ":1.%d" % self._next_id
        self._next_id += 1
        conn = LocalConnection(self, unique_name)
        self._connections[unique_name] = conn
        return \
            conn
    #end connect

    def get_name_owner(self, name) :
        "returns the unique name of the owner of the given name, or None."
        if name.startswith(":") :
            result = (None, name)[name in self._connections]
        else :
            queue = self._names.get(name)
            if queue :
                result = queue[0][0].unique_name
            else :
                result = None
            #end if
        #end if
        return \
            result
    #end get_name_owner

    def _resolve(self, name) :
        owner = self.get_name_owner(name)
        return \
            (lambda : None, lambda : self._connections[owner])[owner != None]()
    #end _resolve

    def _owner_changed(self, name, old_owner, new_owner) :
        _logger.debug("owner of %s changed from %s to %s", name, old_owner, new_owner)
        for conn in list(self._connections.values()) :
            conn._name_owner_changed(name, old_owner, new_owner)
        #end for
    #end _owner_changed

    def _request_name(self, conn, name, flags) :
        queue = self._names.setdefault(name, [])
        entry = next((e for e in queue if e[0] is conn), None)
        if len(queue) == 0 :
            queue.append([conn, flags])
            self._owner_changed(name, None, conn.unique_name)
            result = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
        elif queue[0][0] is conn :
            queue[0][1] = flags
            result = DBUS.REQUEST_NAME_REPLY_ALREADY_OWNER
        elif (
                flags & DBUS.NAME_FLAG_REPLACE_EXISTING != 0
            and
                queue[0][1] & DBUS.NAME_FLAG_ALLOW_REPLACEMENT != 0
        ) :
            old = queue.pop(0)
            if entry != None :
                queue.remove(entry)
            #end if
            if old[1] & DBUS.NAME_FLAG_DO_NOT_QUEUE == 0 :
                queue.insert(0, old)
            #end if
            queue.insert(0, [conn, flags])
            self._owner_changed(name, old[0].unique_name, conn.unique_name)
            result = DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
        elif flags & DBUS.NAME_FLAG_DO_NOT_QUEUE != 0 :
            if entry != None :
                queue.remove(entry)
            #end if
            result = DBUS.REQUEST_NAME_REPLY_EXISTS
        else :
            if entry != None :
                entry[1] = flags
            else :
                queue.append([conn, flags])
            #end if
            result = DBUS.REQUEST_NAME_REPLY_IN_QUEUE
        #end if
        return \
            result
    #end _request_name

    def _release_name(self, conn, name) :
        queue = self._names.get(name)
        if not queue :
            result = DBUS.RELEASE_NAME_REPLY_NON_EXISTENT
        else :
            index = next((i for i in range(len(queue)) if queue[i][0] is conn), None)
            if index == None :
                result = DBUS.RELEASE_NAME_REPLY_NOT_OWNER
            else :
                queue.pop(index)
                if index == 0 :
                    if len(queue) != 0 :
                        new_owner = queue[0][0].unique_name
                    else :
                        new_owner = None
                        del self._names[name]
                    #end if
                    self._owner_changed(name, conn.unique_name, new_owner)
                #end if
                result = DBUS.RELEASE_NAME_REPLY_RELEASED
            #end if
        #end if
        return \
            result
    #end _release_name

    def _disconnected(self, conn) :
        for name in list(self._names.keys()) :
            self._release_name(conn, name)
        #end for
        self._connections.pop(conn.unique_name, None)
        self._owner_changed(conn.unique_name, conn.unique_name, None)
    #end _disconnected

    def _broadcast(self, sender, destination, path, interface, name, args) :
        if destination != None :
            target = self._resolve(destination)
            targets = (lambda : [], lambda : [target])[target != None]()
        else :
            targets = list(self._connections.values())
        #end if
        for conn in targets :
            conn._queue_signal(sender, path, interface, name, args)
        #end for
    #end _broadcast

#end Bus

class LocalConnection(Connection) :
    "a connection to an in-process Bus. Do not instantiate directly; use" \
    " Bus.connect(). Method calls addressed with destination None go to this" \
    " same connection."

    def __init__(self, bus, unique_name) :
        self._bus = bus
        self._unique_name = unique_name
        self._connected = True
        self._objects = {} # (path, interface name) => (Interface, vtable)
        self._registrations = {} # registration id => (path, interface name)
        self._subscriptions = {} # subscription id => (sender, interface, member, path, func)
        self._watches = {} # watcher id => [name, appeared, vanished, known owner]
        self._owners = {} # owner id => [name, acquired, lost, owning]
        self._pending = WeakSet()
        self._next_id = 1
    #end __init__

    def __repr__(self) :
        return \
            "<%s %s>" % (type(self).__name__, self._unique_name)
    #end __repr__

    @property
    def loop(self) :
        return \
            self._bus.loop
    #end loop

    @property
    def bus(self) :
        return \
            self._bus
    #end bus

    @property
    def unique_name(self) :
        return \
            self._unique_name
    #end unique_name

    @property
    def is_connected(self) :
        return \
            self._connected
    #end is_connected

    def _new_id(self) :
        result = self._next_id
        self._next_id += 1
        return \
            result
    #end _new_id

    def _check_connected(self) :
        if not self._connected :
            raise DBusError(DBUS.ERROR_DISCONNECTED, "connection %s is closed" % self._unique_name)
        #end if
    #end _check_connected

    def _get_timeout(self, timeout) :
        # returns timeout in seconds, or None for no timeout.
        if timeout == DBUS.TIMEOUT_USE_DEFAULT :
            timeout = self._bus.default_timeout
        #end if
        if timeout == DBUS.TIMEOUT_INFINITE :
            timeout = None
        #end if
        return \
            timeout
    #end _get_timeout

    #+
    # Outgoing calls
    #-

    def _deliver_call(self, destination, path, interface, method, args, reply_func) :
        if args == None :
            args = WireTuple("", [])
        #end if
        if destination != None :
            target = self._bus._resolve(destination)
        else :
            target = self
        #end if
        if target == None or not target._connected :
            reply_func \
              (
                None,
                DBusError(DBUS.ERROR_SERVICE_UNKNOWN, "the name %s was not provided by any service" % destination)
              )
        else :
            target._handle_call(self._unique_name, path, interface, method, args, reply_func)
        #end if
    #end _deliver_call

    def send_with_reply_and_block(self, *, destination, path, interface, method, args, flags = DBUS.CALL_FLAG_NONE, timeout = DBUS.TIMEOUT_USE_DEFAULT, cancellable = None) :
        "sends the method call and waits for the reply. The call is delivered" \
        " immediately; if the handler defers its reply, the event loop is run until" \
        " the reply arrives, which is only possible if the loop is not already running." \
        " flags are accepted for compatibility with other connections; nothing on" \
        " an in-process bus is auto-started or needs interactive authorization."
        self._check_connected()
        if args != None and not isinstance(args, WireTuple) :
            raise TypeError("call args must be a WireTuple or None")
        #end if
        if cancellable != None and cancellable.cancelled :
            raise DBusError(SATIE.ERROR_CANCELLED, "call to %s was cancelled" % method)
        #end if
        loop = self.loop
        reply_future = loop.create_future()

        def reply_func(reply, error) :
            if not reply_future.done() :
                reply_future.set_result((reply, error))
            #end if
        #end reply_func

    #begin send_with_reply_and_block
        self._deliver_call(destination, path, interface, method, args, reply_func)
        if not reply_future.done() :
            if loop.is_running() :
                reply_future.cancel()
                raise DBusError \
                  (
                    DBUS.ERROR_NO_REPLY,
                    "reply to %s deferred while event loop is running" % method
                  )
            #end if
            cancel_id = None
            if cancellable != None :
                cancel_id = cancellable.connect(reply_future.cancel)
            #end if
            timeout = self._get_timeout(timeout)
            try :
                if timeout != None :
                    loop.run_until_complete(asyncio.wait_for(reply_future, timeout))
                else :
                    loop.run_until_complete(reply_future)
                #end if
            except asyncio.TimeoutError :
                raise DBusError(DBUS.ERROR_NO_REPLY, "no reply to %s within %.3fs" % (method, timeout))
            except asyncio.CancelledError :
                raise DBusError(SATIE.ERROR_CANCELLED, "call to %s was cancelled" % method)
            finally :
                if cancel_id != None :
                    cancellable.disconnect(cancel_id)
                #end if
            #end try
        #end if
        reply, error = reply_future.result()
        if error != None :
            raise error
        #end if
        return \
            reply
    #end send_with_reply_and_block

    def send_with_reply(self, *, destination, path, interface, method, args, flags = DBUS.CALL_FLAG_NONE, timeout = DBUS.TIMEOUT_USE_DEFAULT, cancellable = None) :
        "queues the method call for delivery on the event loop and returns a PendingCall." \
        " flags are ignored, as for send_with_reply_and_block()."
        self._check_connected()
        if args != None and not isinstance(args, WireTuple) :
            raise TypeError("call args must be a WireTuple or None")
        #end if
        loop = self.loop
        pending = PendingCall(loop, method, args, cancellable)
        self._pending.add(pending)
        timeout = self._get_timeout(timeout)
        if timeout != None and not pending.cancelled :
            pending._timer = loop.call_later \
              (
                timeout,
                pending._complete,
                None,
                DBusError(DBUS.ERROR_NO_REPLY, "no reply to %s within %.3fs" % (method, timeout))
              )
        #end if

        def deliver() :
            if not pending.cancelled :
                self._deliver_call(destination, path, interface, method, args, pending._complete)
            #end if
        #end deliver

    #begin send_with_reply
        loop.call_soon(deliver)
        return \
            pending
    #end send_with_reply

    #+
    # Incoming calls
    #-

    def _handle_call(self, sender, path, interface, method, args, reply_func) :

        def error(name, message) :
            reply_func(None, DBusError(name, message))
        #end error

        def lookup(interface_name) :
            entry = self._objects.get((path, interface_name))
            if entry == None :
                if any(p == path for p, i in self._objects) :
                    error(DBUS.ERROR_UNKNOWN_INTERFACE, "no interface %s at object path %s" % (interface_name, path))
                else :
                    error(DBUS.ERROR_UNKNOWN_OBJECT, "no object at path %s" % path)
                #end if
            #end if
            return \
                entry
        #end lookup

        def check_args(signature) :
            expected = signature
            result = args.signature == expected
            if not result :
                error \
                  (
                    DBUS.ERROR_INVALID_ARGS,
                    "type of message, “%s”, does not match expected type “%s”" % (args.signature, expected)
                  )
            #end if
            return \
                result
        #end check_args

    #begin _handle_call
        if interface == DBUS.INTERFACE_PROPERTIES :
            self._handle_properties_call(sender, path, method, args, reply_func, lookup, check_args, error)
        else :
            entry = lookup(interface)
            if entry != None :
                iface, vtable = entry
                method_info = iface.lookup_method(method)
                if method_info == None :
                    error(DBUS.ERROR_UNKNOWN_METHOD, "no method %s in interface %s" % (method, interface))
                elif check_args(method_info.in_signature) :
                    invocation = MethodInvocation \
                      (
                        connection = self,
                        sender = sender,
                        path = path,
                        interface_name = interface,
                        method_name = method,
                        parameters = args,
                        method_info = method_info,
                        reply_func = reply_func,
                      )
                    try :
                        vtable.handle_method_call(invocation)
                    except Exception as err :
                        _logger.exception("dispatching %s.%s at %s", interface, method, path)
                        if not invocation.replied :
                            invocation.return_error(err)
                        #end if
                    #end try
                #end if
            #end if
        #end if
    #end _handle_call

    def _handle_properties_call(self, sender, path, method, args, reply_func, lookup, check_args, error) :

        def get_prop(vtable, propname) :
            # returns value Variant, or None if no value.
            try :
                result = vtable.handle_get_property(propname)
            except DBusError :
                raise
            except Exception as err :
                _logger.exception("getting property %s at %s", propname, path)
                raise DBusError(DBUS.ERROR_FAILED, "error getting property “%s”: %s" % (propname, err))
            #end try
            return \
                result
        #end get_prop

        def find_prop(iface, propname) :
            result = iface.lookup_property(propname)
            if result == None :
                error(DBUS.ERROR_UNKNOWN_PROPERTY, "property “%s” cannot be found" % propname)
            #end if
            return \
                result
        #end find_prop

    #begin _handle_properties_call
        try :
            if method == "Get" :
                if check_args("ss") :
                    interface_name, propname = args.unpack()
                    entry = lookup(interface_name)
                    if entry != None :
                        iface, vtable = entry
                        prop = find_prop(iface, propname)
                        if prop != None :
                            if not prop.access.readable() :
                                error(DBUS.ERROR_ACCESS_DENIED, "property “%s” cannot be read" % propname)
                            else :
                                value = get_prop(vtable, propname)
                                if value == None :
                                    error(DBUS.ERROR_UNKNOWN_PROPERTY, "property “%s” has no value" % propname)
                                else :
                                    reply_func(encode("v", [value]), None)
                                #end if
                            #end if
                        #end if
                    #end if
                #end if
            elif method == "Set" :
                if check_args("ssv") :
                    interface_name, propname, value = args.unpack()
                    entry = lookup(interface_name)
                    if entry != None :
                        iface, vtable = entry
                        prop = find_prop(iface, propname)
                        if prop != None :
                            if not prop.access.writable() :
                                error(DBUS.ERROR_PROPERTY_READ_ONLY, "property “%s” cannot be written" % propname)
                            elif value.signature != prop.signature :
                                error \
                                  (
                                    DBUS.ERROR_INVALID_ARGS,
                                        "new value type “%s” for property “%s” does not match expected “%s”"
                                    %
                                        (value.signature, propname, prop.signature)
                                  )
                            else :
                                try :
                                    vtable.handle_set_property(propname, value)
                                except DBusError :
                                    raise
                                except Exception as err :
                                    _logger.exception("setting property %s at %s", propname, path)
                                    raise DBusError \
                                      (
                                        DBUS.ERROR_FAILED,
                                        "error setting property “%s”: %s" % (propname, err)
                                      )
                                #end try
                                reply_func(WireTuple("", []), None)
                            #end if
                        #end if
                    #end if
                #end if
            elif method == "GetAll" :
                if check_args("s") :
                    interface_name, = args.unpack()
                    entry = lookup(interface_name)
                    if entry != None :
                        iface, vtable = entry
                        values = {}
                        for prop in iface.properties :
                            if prop.access.readable() :
                                value = get_prop(vtable, prop.name)
                                if value != None :
                                    values[prop.name] = value
                                #end if
                            #end if
                        #end for
                        reply_func(encode("a{sv}", [values]), None)
                    #end if
                #end if
            else :
                error(DBUS.ERROR_UNKNOWN_METHOD, "no method %s in interface %s" % (method, DBUS.INTERFACE_PROPERTIES))
            #end if
        except DBusError as err :
            reply_func(None, err)
        #end try
    #end _handle_properties_call

    def register_object(self, path, interface, vtable) :
        self._check_connected()
        validate_path(path)
        if not isinstance(interface, Interface) :
            raise TypeError("interface must be an Interface")
        #end if
        key = (path, interface.name)
        if key in self._objects :
            raise DBusError \
              (
                DBUS.ERROR_OBJECT_PATH_IN_USE,
                "interface %s already registered at %s" % (interface.name, path)
              )
        #end if
        self._objects[key] = (interface, vtable)
        registration_id = self._new_id()
        self._registrations[registration_id] = key
        return \
            registration_id
    #end register_object

    def unregister_object(self, registration_id) :
        key = self._registrations.pop(registration_id, None)
        if key != None :
            del self._objects[key]
        #end if
        return \
            key != None
    #end unregister_object

    #+
    # Signals
    #-

    def emit_signal(self, *, destination = None, path, interface, name, args) :
        self._check_connected()
        validate_path(path)
        validate_interface(interface)
        validate_member(name)
        if args != None and not isinstance(args, WireTuple) :
            raise TypeError("signal args must be a WireTuple or None")
        #end if
        self._bus._broadcast(self._unique_name, destination, path, interface, name, args)
    #end emit_signal

    def _sender_matches(self, wanted, sender) :
        return \
            wanted == None or wanted == sender or self._bus.get_name_owner(wanted) == sender
    #end _sender_matches

    def _queue_signal(self, sender, path, interface, name, args) :
        for subscription_id, (want_sender, want_interface, want_member, want_path, func) in \
            list(self._subscriptions.items()) \
        :
            if (
                    self._sender_matches(want_sender, sender)
                and
                    want_interface in (None, interface)
                and
                    want_member in (None, name)
                and
                    want_path in (None, path)
            ) :
                self.loop.call_soon \
                  (
                    self._deliver_signal, subscription_id, sender, path, interface, name, args
                  )
            #end if
        #end for
    #end _queue_signal

    def _deliver_signal(self, subscription_id, sender, path, interface, name, args) :
        subscription = self._subscriptions.get(subscription_id)
        if subscription != None : # not unsubscribed meanwhile
            func = subscription[4]
            try :
                func(self, sender, path, interface, name, args)
            except Exception :
                _logger.exception("exception in handler for signal %s.%s", interface, name)
            #end try
        #end if
    #end _deliver_signal

    def signal_subscribe(self, *, sender = None, interface = None, member = None, path = None, func) :
        self._check_connected()
        subscription_id = self._new_id()
        self._subscriptions[subscription_id] = (sender, interface, member, path, func)
        return \
            subscription_id
    #end signal_subscribe

    def signal_unsubscribe(self, subscription_id) :
        self._subscriptions.pop(subscription_id, None)
    #end signal_unsubscribe

    #+
    # Bus names
    #-

    def request_name(self, name, flags = 0) :
        "flags is a combination of NAME_FLAG_xxx bits. Result will be a" \
        " REQUEST_NAME_REPLY_xxx value."
        self._check_connected()
        validate_bus_name(name)
        if name.startswith(":") :
            raise DBusError(DBUS.ERROR_INVALID_ARGS, "cannot request unique name %s" % name)
        #end if
        return \
            self._bus._request_name(self, name, flags)
    #end request_name

    def release_name(self, name) :
        "returns a RELEASE_NAME_REPLY_xxx value."
        self._check_connected()
        return \
            self._bus._release_name(self, name)
    #end release_name

    def get_name_owner(self, name) :
        return \
            self._bus.get_name_owner(name)
    #end get_name_owner

    def own_name(self, name, flags, acquired, lost) :
        "requests ownership of name; acquired(connection, name) will be called from" \
        " the event loop when it is obtained, lost(connection, name) when it could" \
        " not be obtained or is later lost. Either callback may be None. Returns an" \
        " id for unown_name()."
        owner_id = self._new_id()
        entry = [name, acquired, lost, False]
        self._owners[owner_id] = entry
        reply = self.request_name(name, flags)
        if reply in (DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER, DBUS.REQUEST_NAME_REPLY_ALREADY_OWNER) :
            if not entry[3] :
                entry[3] = True
                self._queue_name_callback(acquired, name)
            #end if
        elif reply == DBUS.REQUEST_NAME_REPLY_EXISTS :
            self._queue_name_callback(lost, name)
        #end if
        return \
            owner_id
    #end own_name

    def unown_name(self, owner_id) :
        entry = self._owners.pop(owner_id, None)
        if entry != None and self._connected :
            if not any(e[0] == entry[0] for e in self._owners.values()) :
                self.release_name(entry[0])
            #end if
        #end if
    #end unown_name

    def watch_name(self, name, appeared, vanished) :
        "appeared(connection, name, owner) will be called from the event loop" \
        " whenever name gains an owner, vanished(connection, name) when it loses" \
        " one. One of these is called initially to report the current state." \
        " Returns an id for unwatch_name()."
        self._check_connected()
        watcher_id = self._new_id()
        owner = self._bus.get_name_owner(name)
        self._watches[watcher_id] = [name, appeared, vanished, owner]
        if owner != None :
            self._queue_name_callback(appeared, name, owner)
        else :
            self._queue_name_callback(vanished, name)
        #end if
        return \
            watcher_id
    #end watch_name

    def unwatch_name(self, watcher_id) :
        self._watches.pop(watcher_id, None)
    #end unwatch_name

    def _queue_name_callback(self, func, *args) :

        def call_it() :
            try :
                func(self, *args)
            except Exception :
                _logger.exception("exception in name callback for %s", args[0])
            #end try
        #end call_it

    #begin _queue_name_callback
        if func != None :
            self.loop.call_soon(call_it)
        #end if
    #end _queue_name_callback

    def _name_owner_changed(self, name, old_owner, new_owner) :
        for entry in list(self._owners.values()) :
            if entry[0] == name :
                if new_owner == self._unique_name and not entry[3] :
                    entry[3] = True
                    self._queue_name_callback(entry[1], name)
                elif old_owner == self._unique_name and entry[3] :
                    entry[3] = False
                    self._queue_name_callback(entry[2], name)
                #end if
            #end if
        #end for
        for entry in list(self._watches.values()) :
            if entry[0] == name and entry[3] != new_owner :
                entry[3] = new_owner
                if new_owner != None :
                    self._queue_name_callback(entry[1], name, new_owner)
                else :
                    self._queue_name_callback(entry[2], name)
                #end if
            #end if
        #end for
    #end _name_owner_changed

    def close(self) :
        "disconnects from the bus, releasing all names and registrations. Calls" \
        " still awaiting replies fail with DBUS.ERROR_DISCONNECTED."
        if self._connected :
            self._connected = False
            self._objects.clear()
            self._registrations.clear()
            self._subscriptions.clear()
            self._watches.clear()
            self._owners.clear()
            for pending in list(self._pending) :
                pending._complete \
                  (
                    None,
                    DBusError(DBUS.ERROR_DISCONNECTED, "connection %s closed" % self._unique_name)
                  )
            #end for
            self._bus._disconnected(self)
        #end if
    #end close

#end LocalConnection

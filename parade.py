"""
Convenience layer for D-Bus-style IPC on top of satie. Given an
Interface description, builds proxy classes whose instances forward
method calls to a remote object, each method available as a blocking
«name»Sync call and a non-blocking «name»Remote call completed through
a callback, with cached properties and signal observers; and Skeleton
objects that dispatch incoming method calls and property accesses to
application handlers, turning their results and exceptions into proper
replies.
"""
#+
# Copyright 2026 the Satie contributors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import enum
import logging
import asyncio
import satie
from satie import \
    DBUS, \
    SATIE, \
    DBusError, \
    TypeMismatchError, \
    EncodingError, \
    ArityError, \
    Interface, \
    Variant, \
    WireTuple, \
    Cancellable

_logger = logging.getLogger(__name__)

#+
# Argument resolution
#-

def _log_reply(result, error) :
    # default completion for non-blocking calls that were given no callback.
    if error != None :
        _logger.warning("ignoring error from non-blocking call: %s", error)
    #end if
#end _log_reply

class CallOptions :
    "the control values accompanying one method call: the completion callback" \
    " (non-blocking calls only), the call flags (combination of" \
    " DBUS.CALL_FLAG_xxx bits), an optional Cancellable, and the timeout" \
    " in seconds."

    __slots__ = ("callback", "flags", "cancellable", "timeout") # to forestall typos

    def __init__(self, *, callback = None, flags = DBUS.CALL_FLAG_NONE, cancellable = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        self.callback = callback
        self.flags = flags
        self.cancellable = cancellable
        self.timeout = timeout
    #end __init__

    def __repr__(self) :
        return \
            (
                "%s(callback = %s, flags = %#x, cancellable = %s, timeout = %s)"
            %
                (type(self).__name__, repr(self.callback), self.flags, repr(self.cancellable), repr(self.timeout))
            )
    #end __repr__

#end CallOptions

def _as_flags(method_name, flags) :
    # call flags are a bit mask: any int other than a bool, or a float
    # with an integral value, which is converted to int.
    if isinstance(flags, float) and flags.is_integer() :
        result = int(flags)
    elif isinstance(flags, int) and not isinstance(flags, bool) :
        result = flags
    else :
        raise TypeMismatchError \
          (
            "flags for method %s must be an integer, not %s" % (method_name, repr(flags))
          )
    #end if
    return \
        result
#end _as_flags

def resolve_call_args(method_name, nr_in, args, is_sync, *, callback = None, flags = None, cancellable = None, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
    "splits the arguments of a proxy method call into the nr_in positional" \
    " arguments for the method itself and a CallOptions object. Up to three" \
    " trailing arguments may follow the positional ones: a callable (the" \
    " completion callback), a number (call flags) and a Cancellable, in any" \
    " order. Flags may be an int, or a float with an integral value; any other" \
    " number is rejected. The same controls may instead be given as keyword" \
    " arguments, but not both ways at once. A callback given to a blocking call" \
    " is ignored. Returns a tuple (args, options)."
    args = list(args)
    if len(args) < nr_in or len(args) > nr_in + 3 :
        raise ArityError \
          (
                "wrong number of arguments passed for method %s: expected %d, got %d"
            %
                (method_name, nr_in, len(args))
          )
    #end if
    controls = {"callback" : callback, "flags" : flags, "cancellable" : cancellable}
    given = set(k for k in controls if controls[k] != None)
    for index in range(len(args) - 1, nr_in - 1, -1) :
        arg = args.pop()
        if isinstance(arg, Cancellable) :
            kind = "cancellable"
        elif callable(arg) :
            kind = "callback"
        elif isinstance(arg, (int, float)) and not isinstance(arg, bool) :
            kind = "flags"
        else :
            raise TypeMismatchError \
              (
                    "argument %d of method %s is %s. It should be a callback, flags or a Cancellable"
                %
                    (index + 1, method_name, type(arg).__name__)
              )
        #end if
        if kind in given :
            raise TypeMismatchError("%s for method %s specified more than once" % (kind, method_name))
        #end if
        given.add(kind)
        controls[kind] = arg
    #end for
    if controls["callback"] != None and not callable(controls["callback"]) :
        raise TypeMismatchError("callback for method %s is not callable" % method_name)
    #end if
    if controls["flags"] != None :
        controls["flags"] = _as_flags(method_name, controls["flags"])
    #end if
    if controls["cancellable"] != None and not isinstance(controls["cancellable"], Cancellable) :
        raise TypeMismatchError("cancellable for method %s must be a Cancellable" % method_name)
    #end if
    if is_sync :
        controls["callback"] = None
    elif controls["callback"] == None :
        controls["callback"] = _log_reply
    #end if
    if controls["flags"] == None :
        controls["flags"] = DBUS.CALL_FLAG_NONE
    #end if
    return \
        args, CallOptions(timeout = timeout, **controls)
#end resolve_call_args

#+
# Call marshalling
#-

def _decode_reply(method, reply) :
    expected = method.out_signature
    if reply.signature != expected :
        raise DBusError \
          (
            DBUS.ERROR_INVALID_SIGNATURE,
                "reply to %s has type “%s”, expected “%s”"
            %
                (method.name, reply.signature, expected)
          )
    #end if
    if len(method.out_args) == 0 :
        result = None
    else :
        result = reply.unpack()
    #end if
    return \
        result
#end _decode_reply

def call_method(connection, *, destination, path, interface_name, method, args, options, is_sync) :
    "sends a call of the given interface method, a dbus_next introspection Method," \
    " with the positional args. A blocking call returns the tuple of output values" \
    " (None if the method has none) or raises DBusError. A non-blocking call returns" \
    " the PendingCall, and later invokes options.callback with (result, None) or" \
    " (None, error)."
    encoded = satie.encode(method.in_signature, args)
    if is_sync :
        reply = connection.send_with_reply_and_block \
          (
            destination = destination,
            path = path,
            interface = interface_name,
            method = method.name,
            args = encoded,
            flags = options.flags,
            timeout = options.timeout,
            cancellable = options.cancellable
          )
        result = _decode_reply(method, reply)
    else :
        callback = options.callback

        def completed(reply, error) :
            if error == None :
                try :
                    decoded = _decode_reply(method, reply)
                except DBusError as err :
                    error = err
                #end try
            #end if
            if error != None :
                callback(None, error)
            else :
                callback(decoded, None)
            #end if
        #end completed

        result = connection.send_with_reply \
          (
            destination = destination,
            path = path,
            interface = interface_name,
            method = method.name,
            args = encoded,
            flags = options.flags,
            timeout = options.timeout,
            cancellable = options.cancellable
          )
        result.set_notify(completed)
    #end if
    return \
        result
#end call_method

#+
# Signal observers
#-

class SignalEmitter :
    "maintains lists of observer functions keyed by signal name. Observers are" \
    " called in order of connection; one disconnected while a signal is being" \
    " emitted is not called for that emission."

    __slots__ = ("_handlers", "_next_id")

    class _Handler :
        __slots__ = ("id", "name", "func", "active")

        def __init__(self, id, name, func) :
            self.id = id
            self.name = name
            self.func = func
            self.active = True
        #end __init__

    #end _Handler

    def __init__(self) :
        self._handlers = []
        self._next_id = 1
    #end __init__

    def connect(self, name, func) :
        "registers func to be called on each emission of the named signal." \
        " Returns an id for disconnect()."
        if not callable(func) :
            raise TypeError("signal handler must be callable")
        #end if
        handler = self._Handler(self._next_id, name, func)
        self._next_id += 1
        self._handlers.append(handler)
        return \
            handler.id
    #end connect

    def disconnect(self, id) :
        for i, handler in enumerate(self._handlers) :
            if handler.id == id :
                handler.active = False
                self._handlers.pop(i)
                break
            #end if
        else :
            raise ValueError("no signal handler with id %s" % repr(id))
        #end for
    #end disconnect

    def disconnect_all(self) :
        for handler in self._handlers :
            handler.active = False
        #end for
        self._handlers = []
    #end disconnect_all

    def has_handlers(self, name) :
        return \
            any(h.name == name for h in self._handlers)
    #end has_handlers

    def emit(self, name, *args) :
        "calls every observer of the named signal with the given args. Exceptions" \
        " raised by observers are logged."
        for handler in list(self._handlers) :
            if handler.active and handler.name == name :
                try :
                    handler.func(*args)
                except Exception :
                    _logger.exception("exception in handler for signal %s", name)
                #end try
            #end if
        #end for
    #end emit

#end SignalEmitter

#+
# Proxy objects -- for client-side use
#-

class PROXY_FLAGS(enum.IntFlag) :
    "options controlling proxy initialization."
    NONE = 0
    DO_NOT_LOAD_PROPERTIES = 1 # skip the initial GetAll of property values
    DO_NOT_CONNECT_SIGNALS = 2 # do not listen for signals or property changes
#end PROXY_FLAGS

_PROPERTIES_CHANGED = "properties-changed" # emitter key, cannot clash with a member name

_INIT_NONFATAL_ERRORS = \
    { # errors from the initial property load that still allow a usable proxy
        DBUS.ERROR_UNKNOWN_METHOD,
        DBUS.ERROR_UNKNOWN_INTERFACE,
        DBUS.ERROR_UNKNOWN_OBJECT,
        DBUS.ERROR_UNKNOWN_PROPERTY,
    }

class ProxyBase :
    "base class for proxy classes built by def_proxy_class(). Instantiate as\n" \
    "\n" \
    "    proxy = proxy_class(connection = «conn», bus_name = «name», path = «path»)\n" \
    "\n" \
    "Any of the keywords may be omitted if a default was given to" \
    " def_proxy_class(); bus_name None addresses the connection itself. Without" \
    " a callback keyword, initialization blocks until the property values" \
    " have been loaded, raising DBusError on failure. With callback = «func»," \
    " initialization proceeds in the background and «func»(proxy, None) or" \
    " «func»(None, error) is called from the event loop when done. Generated" \
    " methods may only be called after initialization succeeds."

    __slots__ = \
        (
            "connection", "bus_name", "path", "flags",
            "_cache", "_emitter", "_subscriptions", "_initialized", "__weakref__",
        ) # to forestall typos

    interface = None # overridden by def_proxy_class
    _default_connection = None
    _default_bus_name = None
    _default_path = None
    _default_flags = PROXY_FLAGS.NONE

    def __init__(self, *, connection = None, bus_name = None, path = None, flags = None, callback = None, cancellable = None) :
        celf = type(self)
        if connection == None :
            connection = celf._default_connection
        #end if
        if connection == None :
            raise TypeError("no connection specified for %s proxy" % celf.__name__)
        #end if
        if bus_name == None :
            bus_name = celf._default_bus_name
        #end if
        if path == None :
            path = celf._default_path
        #end if
        if path == None :
            raise TypeError("no object path specified for %s proxy" % celf.__name__)
        #end if
        satie.validate_path(path)
        if bus_name != None :
            satie.validate_bus_name(bus_name)
        #end if
        if flags == None :
            flags = celf._default_flags
        #end if
        self.connection = connection
        self.bus_name = bus_name
        self.path = path
        self.flags = PROXY_FLAGS(flags)
        self._cache = {}
        self._emitter = SignalEmitter()
        self._subscriptions = []
        self._initialized = False
        if callback != None :
            self._init_async(callback, cancellable)
        else :
            self._init_sync(cancellable)
        #end if
    #end __init__

    def __repr__(self) :
        return \
            (
                "<%s %s at %s on %s>"
            %
                (type(self).__name__, self.interface_name, self.path, self.bus_name or self.connection.unique_name)
            )
    #end __repr__

    @property
    def interface_name(self) :
        return \
            self.interface.name
    #end interface_name

    @property
    def initialized(self) :
        return \
            self._initialized
    #end initialized

    def _check_initialized(self) :
        if not self._initialized :
            raise RuntimeError("%s proxy used before initialization completed" % self.interface_name)
        #end if
    #end _check_initialized

    #+
    # Initialization
    #-

    def _wants_properties(self) :
        return \
            (
                self.flags & PROXY_FLAGS.DO_NOT_LOAD_PROPERTIES == 0
            and
                len(self.interface.properties) != 0
            )
    #end _wants_properties

    def _getall_call(self) :
        return \
            dict \
              (
                destination = self.bus_name,
                path = self.path,
                interface = DBUS.INTERFACE_PROPERTIES,
                method = "GetAll",
                args = satie.encode("s", [self.interface_name]),
              )
    #end _getall_call

    def _accept_values(self, values) :
        # returns those of the property values whose types match their declarations.
        result = {}
        for propname, value in values.items() :
            prop = self.interface.lookup_property(propname)
            if prop != None and value.signature != prop.signature :
                _logger.warning \
                  (
                    "dropping value of type “%s” for property %s of %s, expected “%s”",
                    value.signature, propname, self, prop.signature
                  )
            else :
                result[propname] = value
            #end if
        #end for
        return \
            result
    #end _accept_values

    def _load_properties(self, reply, error) :
        # common handling of GetAll outcome; raises error only if fatal.
        if error != None :
            if not isinstance(error, DBusError) or error.name not in _INIT_NONFATAL_ERRORS :
                raise error
            #end if
            _logger.debug("no properties loaded for %s: %s", self, error)
        elif reply != None :
            if reply.signature != "a{sv}" :
                raise DBusError \
                  (
                    DBUS.ERROR_INVALID_SIGNATURE,
                    "GetAll reply has type “%s”, expected “a{sv}”" % reply.signature
                  )
            #end if
            self._cache = self._accept_values(reply.unpack()[0])
        #end if
    #end _load_properties

    def _finish_init(self) :
        if self.flags & PROXY_FLAGS.DO_NOT_CONNECT_SIGNALS == 0 :
            self._connect_signals()
        #end if
        self._initialized = True
    #end _finish_init

    def _init_sync(self, cancellable) :
        if self._wants_properties() :
            try :
                reply = self.connection.send_with_reply_and_block \
                  (
                    cancellable = cancellable,
                    **self._getall_call()
                  )
            except DBusError as err :
                self._load_properties(None, err)
            else :
                self._load_properties(reply, None)
            #end try
        #end if
        self._finish_init()
    #end _init_sync

    def _init_async(self, callback, cancellable) :

        def report(result, error) :
            try :
                callback(result, error)
            except Exception :
                _logger.exception("exception in init callback for %s", self)
            #end try
        #end report

        def loaded(reply, error) :
            try :
                self._load_properties(reply, error)
            except DBusError as err :
                report(None, err)
            else :
                self._finish_init()
                report(self, None)
            #end try
        #end loaded

    #begin _init_async
        if self._wants_properties() :
            pending = self.connection.send_with_reply(cancellable = cancellable, **self._getall_call())
            pending.set_notify(loaded)
        else :
            self.connection.loop.call_soon(loaded, None, None)
        #end if
    #end _init_async

    #+
    # Signals
    #-

    def _connect_signals(self) :
        self._subscriptions.append \
          (
            self.connection.signal_subscribe
              (
                sender = self.bus_name,
                interface = self.interface_name,
                path = self.path,
                func = self._signal_received
              )
          )
        self._subscriptions.append \
          (
            self.connection.signal_subscribe
              (
                sender = self.bus_name,
                interface = DBUS.INTERFACE_PROPERTIES,
                member = "PropertiesChanged",
                path = self.path,
                func = self._properties_changed
              )
          )
    #end _connect_signals

    def _signal_received(self, connection, sender, path, interface, name, args) :
        signal = self.interface.lookup_signal(name)
        if signal == None :
            _logger.debug("ignoring undeclared signal %s.%s", interface, name)
            return
        #end if
        expected = signal.signature
        actual = args.signature if args != None else ""
        if actual != expected :
            _logger.warning \
              (
                "dropping signal %s.%s with type “%s”, expected “%s”",
                interface, name, actual, expected
              )
            return
        #end if
        values = list(args.unpack()) if args != None else []
        self._emitter.emit(name, self, sender, values)
    #end _signal_received

    def _properties_changed(self, connection, sender, path, interface, name, args) :
        if args == None or args.signature != "sa{sv}as" :
            _logger.warning("dropping malformed PropertiesChanged signal from %s", sender)
            return
        #end if
        interface_name, changed, invalidated = args.unpack()
        if interface_name != self.interface_name :
            return
        #end if
        changed = self._accept_values(changed)
        for propname, value in changed.items() :
            self._cache[propname] = value
        #end for
        for propname in invalidated :
            self._cache.pop(propname, None)
        #end for
        if len(changed) != 0 or len(invalidated) != 0 :
            self._emitter.emit(_PROPERTIES_CHANGED, self, changed, invalidated)
        #end if
    #end _properties_changed

    def connect_signal(self, name, func) :
        "func(proxy, sender, args) will be called for each occurrence of the named" \
        " signal, with args the list of its decoded arguments. Returns an id for" \
        " disconnect_signal()."
        if self.interface.lookup_signal(name) == None :
            raise ValueError("no signal %s in interface %s" % (name, self.interface_name))
        #end if
        return \
            self._emitter.connect(name, func)
    #end connect_signal

    def disconnect_signal(self, id) :
        self._emitter.disconnect(id)
    #end disconnect_signal

    def connect_properties_changed(self, func) :
        "func(proxy, changed, invalidated) will be called whenever a PropertiesChanged" \
        " notification updates the property cache: changed is a dict of new" \
        " Variant values, invalidated a list of names whose values were discarded." \
        " Returns an id for disconnect_signal()."
        return \
            self._emitter.connect(_PROPERTIES_CHANGED, func)
    #end connect_properties_changed

    #+
    # Properties
    #-

    def _lookup_property(self, name) :
        prop = self.interface.lookup_property(name)
        if prop == None :
            raise DBusError(DBUS.ERROR_UNKNOWN_PROPERTY, "property “%s” cannot be found" % name)
        #end if
        return \
            prop
    #end _lookup_property

    def get_cached_property(self, name) :
        "returns the cached Variant for the named property, or None."
        return \
            self._cache.get(name)
    #end get_cached_property

    def set_cached_property(self, name, value) :
        "replaces the cached Variant for the named property without contacting" \
        " the remote object; None removes it from the cache."
        if value == None :
            self._cache.pop(name, None)
        else :
            if not isinstance(value, Variant) :
                raise TypeError("cached property value must be a Variant")
            #end if
            self._cache[name] = value
        #end if
    #end set_cached_property

    def cached_property_names(self) :
        return \
            list(self._cache.keys())
    #end cached_property_names

    def get_property(self, name) :
        "returns the cached value of the named property in native form, or None if" \
        " there is none."
        prop = self._lookup_property(name)
        if not prop.access.readable() :
            raise DBusError(DBUS.ERROR_ACCESS_DENIED, "property “%s” cannot be read" % name)
        #end if
        value = self._cache.get(name)
        return \
            (lambda : None, lambda : value.value)[value != None]()
    #end get_property

    def set_property(self, name, value) :
        "updates the cached value of the named property immediately, and sends the" \
        " new value to the remote object without waiting. A failure of the remote" \
        " update, including one to send it at all, is logged, not raised."
        prop = self._lookup_property(name)
        if not prop.access.writable() :
            raise DBusError(DBUS.ERROR_PROPERTY_READ_ONLY, "property “%s” cannot be written" % name)
        #end if
        self._check_initialized()
        variant = satie.make_variant(prop.signature, value)
        self._cache[name] = variant

        def set_done(reply, error) :
            if error != None :
                _logger.warning("setting property %s on %s failed: %s", name, self, error)
            #end if
        #end set_done

    #begin set_property
        try :
            pending = self.connection.send_with_reply \
              (
                destination = self.bus_name,
                path = self.path,
                interface = DBUS.INTERFACE_PROPERTIES,
                method = "Set",
                args = satie.encode("ssv", [self.interface_name, name, variant])
              )
        except DBusError as err :
            set_done(None, err)
        else :
            pending.set_notify(set_done)
        #end try
    #end set_property

    def close(self) :
        "stops listening for signals and drops all observers."
        for subscription in self._subscriptions :
            self.connection.signal_unsubscribe(subscription)
        #end for
        self._subscriptions = []
        self._emitter.disconnect_all()
    #end close

#end ProxyBase

def def_proxy_class(interface, *, name = None, connection = None, bus_name = None, path = None, flags = PROXY_FLAGS.NONE) :
    "given an Interface, creates a subclass of ProxyBase with a «name»Remote and a" \
    " «name»Sync method for each method of the interface, and a Python property" \
    " for each of its properties. connection, bus_name, path and flags supply" \
    " defaults for instantiation.\n" \
    "\n" \
    "«name»Sync(«args»[, «flags»][, «cancellable»]) blocks and returns the tuple of" \
    " output values, or None if the method has none. «name»Remote(«args»[, «callback»]" \
    "[, «flags»][, «cancellable»]) returns at once with a PendingCall, and later" \
    " calls «callback»(result, None) or «callback»(None, error). The trailing" \
    " controls may also be passed as keywords callback, flags, cancellable and" \
    " timeout."

    if not isinstance(interface, Interface) :
        raise TypeError("interface must be an Interface")
    #end if
    if name == None :
        name = interface.name.rsplit(".", 1)[-1] + "Proxy"
    #end if

    class proxy(ProxyBase) :
        # class that will be constructed, to be instantiated for a given
        # connection, bus name and path.

        __slots__ = ()

        # rest filled in dynamically below.

    #end proxy

    def def_method(method) :
        # constructs the pair of method-call methods.
        nr_in = len(method.in_args)

        def call_remote(self, *args, **kwargs) :
            self._check_initialized()
            args, options = resolve_call_args(method.name, nr_in, args, False, **kwargs)
            return \
                call_method \
                  (
                    self.connection,
                    destination = self.bus_name,
                    path = self.path,
                    interface_name = self.interface_name,
                    method = method,
                    args = args,
                    options = options,
                    is_sync = False
                  )
        #end call_remote

        def call_sync(self, *args, **kwargs) :
            self._check_initialized()
            args, options = resolve_call_args(method.name, nr_in, args, True, **kwargs)
            return \
                call_method \
                  (
                    self.connection,
                    destination = self.bus_name,
                    path = self.path,
                    interface_name = self.interface_name,
                    method = method,
                    args = args,
                    options = options,
                    is_sync = True
                  )
        #end call_sync

    #begin def_method
        description = \
            (
                "method, %(args)s, %(result)s"
            %
                {
                    "args" :
                        (
                            lambda : "no args",
                            lambda : "args %s" % method.in_signature,
                        )[nr_in != 0](),
                    "result" :
                        (
                            lambda : "no result",
                            lambda : "result %s" % method.out_signature,
                        )[len(method.out_args) != 0](),
                }
            )
        for suffix, func in (("Remote", call_remote), ("Sync", call_sync)) :
            func.__name__ = method.name + suffix
            func.__qualname__ = "%s.%s" % (name, func.__name__)
            func.__doc__ = description
            setattr(proxy, func.__name__, func)
        #end for
    #end def_method

    def def_prop(prop) :
        # defines getter and, if writable, setter for a property.

        def get_prop(self) :
            return \
                self.get_property(prop.name)
        #end get_prop

        def set_prop(self, value) :
            self.set_property(prop.name, value)
        #end set_prop

    #begin def_prop
        if hasattr(proxy, prop.name) :
            raise ValueError("property name %s clashes with a proxy attribute" % prop.name)
        #end if
        setattr \
          (
            proxy,
            prop.name,
            property
              (
                fget = get_prop,
                fset = (lambda : None, lambda : set_prop)[prop.access.writable()](),
                doc = "property, type %s, access %s" % (prop.signature, prop.access.name.lower())
              )
          )
    #end def_prop

#begin def_proxy_class
    for method in interface.methods :
        def_method(method)
    #end for
    for prop in interface.properties :
        def_prop(prop)
    #end for
    proxy.__name__ = name
    proxy.__qualname__ = name
    proxy.__doc__ = "proxy for interface %s" % interface.name
    proxy.interface = interface
    proxy._default_connection = connection
    proxy._default_bus_name = bus_name
    proxy._default_path = path
    proxy._default_flags = PROXY_FLAGS(flags)
    return \
        proxy
#end def_proxy_class

#+
# Service objects -- for server-side use
#-

def _property_variant(prop, value) :
    # wraps a property value in a Variant of the property’s declared type. A
    # Variant already of that type is passed through; any other value,
    # including a Variant of some other type, becomes the content of a new one.
    if isinstance(value, Variant) and value.signature == prop.signature :
        result = value
    else :
        result = satie.make_variant(prop.signature, value)
    #end if
    return \
        result
#end _property_variant

class Skeleton :
    "dispatches incoming method calls and property accesses for an Interface to" \
    " handlers. By default these are found on the impl object: for each method" \
    " «name», a handler impl.«name»(*args) returning the output values, or failing" \
    " that impl.«name»Async(args, invocation) which must itself reply through the" \
    " MethodInvocation; for each property, the like-named attribute of impl. Use" \
    " bind_method() and bind_property() to supply handlers explicitly.\n" \
    "\n" \
    "A «name» handler may return a WireTuple, or the output values: a single" \
    " value for a method with one out arg, otherwise a sequence, or None for a" \
    " method with none. It may also be a coroutine function, in which case the" \
    " reply is sent when its coroutine finishes. An exception raised by a handler" \
    " becomes an error reply: a DBusError supplies its own name, otherwise the" \
    " exception class name is used, prefixed with SATIE.ERROR_PREFIX if it has" \
    " no dots."

    def __init__(self, interface, impl = None) :
        if not isinstance(interface, Interface) :
            raise TypeError("interface must be an Interface")
        #end if
        self.interface = interface
        self.impl = impl
        self._methods = {} # method name => [handler, async_handler]
        self._props = {} # property name => [getter, setter]
        self._exports = [] # list of (connection, path, registration id)
        self._tasks = set()
        for method in interface.methods :
            self._methods[method.name] = \
                [
                    self._impl_callable(method.name),
                    self._impl_callable(method.name + "Async"),
                ]
        #end for
        for prop in interface.properties :
            self._props[prop.name] = [self._impl_getter(prop.name), self._impl_setter(prop.name)]
        #end for
    #end __init__

    def __repr__(self) :
        return \
            "<%s %s for %s>" % (type(self).__name__, self.interface.name, repr(self.impl))
    #end __repr__

    def _impl_callable(self, name) :
        result = getattr(self.impl, name, None) if self.impl != None else None
        return \
            (lambda : None, lambda : result)[callable(result)]()
    #end _impl_callable

    def _impl_getter(self, name) :

        def getter() :
            return \
                getattr(self.impl, name, None)
        #end getter

    #begin _impl_getter
        return \
            (lambda : None, lambda : getter)[self.impl != None]()
    #end _impl_getter

    def _impl_setter(self, name) :

        def setter(value) :
            setattr(self.impl, name, value)
        #end setter

    #begin _impl_setter
        return \
            (lambda : None, lambda : setter)[self.impl != None]()
    #end _impl_setter

    def bind_method(self, name, handler = None, async_handler = None) :
        "supplies the handler and/or async handler for the named method, replacing" \
        " any taken from the impl object."
        if name not in self._methods :
            raise ValueError("no method %s in interface %s" % (name, self.interface.name))
        #end if
        for func in (handler, async_handler) :
            if func != None and not callable(func) :
                raise TypeError("method handler must be callable")
            #end if
        #end for
        entry = self._methods[name]
        if handler != None :
            entry[0] = handler
        #end if
        if async_handler != None :
            entry[1] = async_handler
        #end if
        return \
            self
    #end bind_method

    def bind_property(self, name, getter = None, setter = None) :
        "supplies getter() and/or setter(value) functions for the named property," \
        " replacing access to the impl attribute."
        if name not in self._props :
            raise ValueError("no property %s in interface %s" % (name, self.interface.name))
        #end if
        entry = self._props[name]
        if getter != None :
            entry[0] = getter
        #end if
        if setter != None :
            entry[1] = setter
        #end if
        return \
            self
    #end bind_property

    #+
    # Method dispatch
    #-

    def _keep_task(self, loop, coro) :
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return \
            task
    #end _keep_task

    def _return_handler_error(self, invocation, err) :
        if isinstance(err, DBusError) :
            name, message = err.name, err.message
        else :
            name, message = type(err).__name__, str(err)
        #end if
        if "." not in name :
            name = SATIE.ERROR_PREFIX + name
        #end if
        _logger.debug("handler for %s raised %s: %s", invocation.method_name, name, message)
        invocation.return_dbus_error(name, message)
    #end _return_handler_error

    def _return_result(self, invocation, method, result) :
        if isinstance(result, WireTuple) :
            invocation.return_value(result)
        else :
            if result == None :
                result = []
            elif len(method.out_args) == 1 :
                result = [result]
            #end if
            try :
                reply = satie.encode(method.out_signature, result)
            except (TypeError, ValueError) as err :
                _logger.debug("bad return value from handler for %s: %s", method.name, err)
                invocation.return_dbus_error \
                  (
                    SATIE.ERROR_VALUE,
                    "The return value from the method handler was not in the correct format"
                  )
            else :
                invocation.return_value(reply)
            #end try
        #end if
    #end _return_result

    def handle_method_call(self, invocation) :
        "dispatches one incoming call to its handler. A reply is always sent," \
        " either here or, for async handlers, by the handler."
        method = invocation.method_info
        if method == None :
            method = self.interface.lookup_method(invocation.method_name)
        #end if
        if method == None :
            invocation.return_dbus_error \
              (
                DBUS.ERROR_UNKNOWN_METHOD,
                "no method %s in interface %s" % (invocation.method_name, self.interface.name)
              )
            return
        #end if
        handler, async_handler = self._methods.get(method.name, (None, None))
        args = list(invocation.parameters.unpack())
        loop = invocation.connection.loop

        async def await_result(coro) :
            try :
                result = await coro
            except Exception as err :
                self._return_handler_error(invocation, err)
            else :
                self._return_result(invocation, method, result)
            #end try
        #end await_result

        async def await_async_handler(coro) :
            try :
                await coro
            except Exception as err :
                if invocation.replied :
                    _logger.exception("exception in async handler for %s after reply", method.name)
                else :
                    self._return_handler_error(invocation, err)
                #end if
            #end try
        #end await_async_handler

    #begin handle_method_call
        if handler != None :
            try :
                result = handler(*args)
            except Exception as err :
                self._return_handler_error(invocation, err)
            else :
                if asyncio.iscoroutine(result) :
                    self._keep_task(loop, await_result(result))
                else :
                    self._return_result(invocation, method, result)
                #end if
            #end try
        elif async_handler != None :
            try :
                result = async_handler(args, invocation)
            except Exception as err :
                if invocation.replied :
                    _logger.exception("exception in async handler for %s after reply", method.name)
                else :
                    self._return_handler_error(invocation, err)
                #end if
            else :
                if asyncio.iscoroutine(result) :
                    self._keep_task(loop, await_async_handler(result))
                #end if
            #end try
        else :
            _logger.warning \
              (
                "method %s of interface %s is not implemented", method.name, self.interface.name
              )
            invocation.return_dbus_error \
              (
                SATIE.ERROR_NOT_IMPLEMENTED,
                "method %s is not implemented" % method.name
              )
        #end if
    #end handle_method_call

    #+
    # Property dispatch
    #-

    def handle_get_property(self, name) :
        "returns the current value of the named property as a Variant, or None if" \
        " it has no value."
        prop = self.interface.lookup_property(name)
        getter = self._props.get(name, (None, None))[0]
        if prop == None or getter == None :
            result = None
        else :
            value = getter()
            if value == None :
                result = None
            else :
                result = _property_variant(prop, value)
            #end if
        #end if
        return \
            result
    #end handle_get_property

    def handle_set_property(self, name, value) :
        "stores the new value of the named property, given as a Variant."
        setter = self._props.get(name, (None, None))[1]
        if setter == None :
            raise DBusError(DBUS.ERROR_PROPERTY_READ_ONLY, "property “%s” cannot be written" % name)
        #end if
        setter(value.value)
    #end handle_set_property

    #+
    # Exporting
    #-

    def export(self, connection, path) :
        "makes this object available at the given path on the given connection." \
        " An object may be exported on more than one connection."
        registration_id = connection.register_object(path, self.interface, self)
        self._exports.append((connection, path, registration_id))
        _logger.debug("exported %s at %s on %s", self.interface.name, path, connection.unique_name)
    #end export

    def unexport(self) :
        "withdraws this object from all connections it was exported on."
        exports, self._exports = self._exports, []
        for connection, path, registration_id in exports :
            connection.unregister_object(registration_id)
        #end for
    #end unexport

    def unexport_from_connection(self, connection) :
        keep = []
        for entry in self._exports :
            if entry[0] is connection :
                connection.unregister_object(entry[2])
            else :
                keep.append(entry)
            #end if
        #end for
        self._exports = keep
    #end unexport_from_connection

    @property
    def exported(self) :
        return \
            len(self._exports) != 0
    #end exported

    @property
    def connections(self) :
        return \
            list(e[0] for e in self._exports)
    #end connections

    def _broadcast(self, interface, name, args) :
        for connection, path, registration_id in self._exports :
            connection.emit_signal(path = path, interface = interface, name = name, args = args)
        #end for
    #end _broadcast

    def emit_signal(self, name, *args) :
        "sends the named signal with the given args from every place this object" \
        " is exported."
        signal = self.interface.lookup_signal(name)
        if signal == None :
            raise ValueError("no signal %s in interface %s" % (name, self.interface.name))
        #end if
        if len(signal.args) == 0 :
            if len(args) != 0 :
                raise EncodingError("signal %s takes no arguments, got %d" % (name, len(args)))
            #end if
            payload = None
        else :
            payload = satie.encode(signal.signature, args)
        #end if
        self._broadcast(self.interface.name, name, payload)
    #end emit_signal

    def emit_property_changed(self, name, value) :
        "notifies listeners that the named property has changed to the given value," \
        " or has been invalidated if value is None."
        prop = self.interface.lookup_property(name)
        if prop == None :
            raise ValueError("no property %s in interface %s" % (name, self.interface.name))
        #end if
        if value != None :
            changed = {name : _property_variant(prop, value)}
            invalidated = []
        else :
            changed = {}
            invalidated = [name]
        #end if
        self._broadcast \
          (
            DBUS.INTERFACE_PROPERTIES,
            "PropertiesChanged",
            satie.encode("sa{sv}as", [self.interface.name, changed, invalidated])
          )
    #end emit_property_changed

#end Skeleton

#+
# Bus-name helpers
#-

def own_name(connection, name, flags = 0, acquired = None, lost = None) :
    "requests ownership of a well-known name; see Connection.own_name()."
    return \
        connection.own_name(name, flags, acquired, lost)
#end own_name

def unown_name(connection, owner_id) :
    connection.unown_name(owner_id)
#end unown_name

def watch_name(connection, name, appeared = None, vanished = None) :
    "watches for a name gaining or losing an owner; see Connection.watch_name()."
    return \
        connection.watch_name(name, appeared, vanished)
#end watch_name

def unwatch_name(connection, watcher_id) :
    connection.unwatch_name(watcher_id)
#end unwatch_name

"""
Shared fixtures: an event loop, an in-process bus, a test service
exported on one connection and a proxy for it on another.
"""
#+
# Copyright 2026 the Satie contributors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import asyncio
import pytest
import satie
import parade
from satie import \
    DBusError, \
    Variant

BUS_NAME = "org.satie.TestService"
OBJECT_PATH = "/org/satie/Test"

TEST_XML = """
<node>
  <interface name="org.satie.Test">
    <method name="nonJsonFrobateStuff">
      <arg type="i" direction="in"/>
      <arg type="s" direction="out"/>
    </method>
    <method name="frobateStuff">
      <arg type="a{sv}" direction="in"/>
      <arg type="a{sv}" direction="out"/>
    </method>
    <method name="alwaysThrowException">
      <arg type="a{sv}" direction="in"/>
      <arg type="a{sv}" direction="out"/>
    </method>
    <method name="throwDottedError"/>
    <method name="throwCustomError"/>
    <method name="thisDoesNotExist"/>
    <method name="noInParameter">
      <arg type="s" direction="out"/>
    </method>
    <method name="multipleInArgs">
      <arg type="i" direction="in"/>
      <arg type="i" direction="in"/>
      <arg type="i" direction="in"/>
      <arg type="i" direction="in"/>
      <arg type="i" direction="in"/>
      <arg type="s" direction="out"/>
    </method>
    <method name="noReturnValue"/>
    <method name="emitSignal"/>
    <method name="emitNoArgSignal"/>
    <method name="multipleOutValues">
      <arg type="s" direction="out"/>
      <arg type="s" direction="out"/>
      <arg type="s" direction="out"/>
    </method>
    <method name="oneArrayOut">
      <arg type="as" direction="out"/>
    </method>
    <method name="arrayOfArrayOut">
      <arg type="aas" direction="out"/>
    </method>
    <method name="multipleArrayOut">
      <arg type="as" direction="out"/>
      <arg type="as" direction="out"/>
    </method>
    <method name="arrayOutBadSig">
      <arg type="i" direction="out"/>
    </method>
    <method name="wrongReplyVariant">
      <arg type="i" direction="out"/>
    </method>
    <method name="byteArrayEcho">
      <arg type="ay" direction="in"/>
      <arg type="ay" direction="out"/>
    </method>
    <method name="byteEcho">
      <arg type="y" direction="in"/>
      <arg type="y" direction="out"/>
    </method>
    <method name="dictEcho">
      <arg type="a{sv}" direction="in"/>
      <arg type="a{sv}" direction="out"/>
    </method>
    <method name="echo">
      <arg type="s" direction="in"/>
      <arg type="i" direction="in"/>
      <arg type="s" direction="out"/>
      <arg type="i" direction="out"/>
    </method>
    <method name="sleepyEcho">
      <arg type="s" direction="in"/>
      <arg type="s" direction="out"/>
    </method>
    <method name="neverReplies"/>
    <method name="structArray">
      <arg type="a(ii)" direction="out"/>
    </method>
    <signal name="signalFoo">
      <arg type="s" direction="out"/>
    </signal>
    <signal name="noArgSignal"/>
    <property name="PropReadOnly" type="b" access="read"/>
    <property name="PropWriteOnly" type="s" access="write"/>
    <property name="PropReadWrite" type="v" access="readwrite"/>
  </interface>
</node>
"""

TEST_INTERFACE = satie.Interface.parse(TEST_XML)

class FrobnicationError(Exception) :
    pass
#end FrobnicationError

class TestService :
    "implementation of the org.satie.Test interface."

    __test__ = False # not a test class

    def __init__(self) :
        self.skeleton = None
        self.PropReadOnly = True
        self.PropWriteOnly = ""
        self.PropReadWrite = Variant("u", 58)
        self.pending = []
    #end __init__

    def nonJsonFrobateStuff(self, i) :
        if i == 42 :
            result = "42 it is!"
        else :
            result = "Oops"
        #end if
        return \
            result
    #end nonJsonFrobateStuff

    def frobateStuff(self, args) :
        return \
            {"hello" : Variant("s", "world")}
    #end frobateStuff

    def alwaysThrowException(self, args) :
        raise Exception("Exception in method call: alwaysThrowException")
    #end alwaysThrowException

    def throwDottedError(self) :
        raise DBusError("org.satie.Test.Error.Frobnication", "frobnication failed")
    #end throwDottedError

    def throwCustomError(self) :
        raise FrobnicationError("could not frobnicate")
    #end throwCustomError

    def noInParameter(self) :
        return \
            "Yes!"
    #end noInParameter

    def multipleInArgs(self, a, b, c, d, e) :
        return \
            "%d %d %d %d %d" % (a, b, c, d, e)
    #end multipleInArgs

    def noReturnValue(self) :
        pass
    #end noReturnValue

    def emitSignal(self) :
        self.skeleton.emit_signal("signalFoo", "foobar")
    #end emitSignal

    def emitNoArgSignal(self) :
        self.skeleton.emit_signal("noArgSignal")
    #end emitNoArgSignal

    def multipleOutValues(self) :
        return \
            ["Hello", "World", "!"]
    #end multipleOutValues

    def oneArrayOut(self) :
        return \
            ["Hello", "World", "!"]
    #end oneArrayOut

    def arrayOfArrayOut(self) :
        return \
            [["Hello", "World"], ["World", "Hello"]]
    #end arrayOfArrayOut

    def multipleArrayOut(self) :
        return \
            [["Hello", "World"], ["World", "Hello"]]
    #end multipleArrayOut

    def arrayOutBadSig(self) :
        return \
            ["Hello", "World", "!"]
    #end arrayOutBadSig

    def wrongReplyVariant(self) :
        return \
            satie.encode("s", ["not an int"])
    #end wrongReplyVariant

    def byteArrayEcho(self, binary) :
        return \
            binary
    #end byteArrayEcho

    def byteEcho(self, byte) :
        return \
            byte
    #end byteEcho

    def dictEcho(self, d) :
        return \
            d
    #end dictEcho

    def echoAsync(self, args, invocation) :
        # reply later from the event loop
        invocation.connection.loop.call_soon \
          (
            invocation.return_value, satie.encode("si", args)
          )
    #end echoAsync

    async def sleepyEcho(self, s) :
        await asyncio.sleep(0.01)
        return \
            s
    #end sleepyEcho

    def neverRepliesAsync(self, args, invocation) :
        self.pending.append(invocation)
    #end neverRepliesAsync

    def structArray(self) :
        return \
            [(128, 123456), (42, 654321)]
    #end structArray

#end TestService

TestProxy = parade.def_proxy_class(TEST_INTERFACE, name = "TestProxy")
TestProxy.__test__ = False

def run_loop(loop, seconds = 0.05) :
    "lets the loop process whatever is queued on it."
    loop.run_until_complete(asyncio.sleep(seconds))
#end run_loop

def wait_reply(loop, start, timeout = 5) :
    "calls start(callback) and runs the loop until the callback is invoked," \
    " returning the (result, error) it was given."
    done = loop.create_future()

    def callback(result, error) :
        assert not done.done(), "callback invoked more than once"
        done.set_result((result, error))
    #end callback

    start(callback)
    return \
        loop.run_until_complete(asyncio.wait_for(done, timeout))
#end wait_reply

@pytest.fixture
def loop() :
    loop = asyncio.new_event_loop()
    yield loop
    loop.run_until_complete(loop.shutdown_asyncgens())
    loop.close()
#end loop

@pytest.fixture
def bus(loop) :
    return \
        satie.Bus(loop)
#end bus

@pytest.fixture
def service_conn(bus) :
    conn = bus.connect()
    assert conn.request_name(BUS_NAME) == satie.DBUS.REQUEST_NAME_REPLY_PRIMARY_OWNER
    yield conn
    conn.close()
#end service_conn

@pytest.fixture
def service(service_conn) :
    impl = TestService()
    impl.skeleton = parade.Skeleton(TEST_INTERFACE, impl)
    impl.skeleton.export(service_conn, OBJECT_PATH)
    yield impl
    impl.skeleton.unexport()
#end service

@pytest.fixture
def client_conn(bus) :
    conn = bus.connect()
    yield conn
    conn.close()
#end client_conn

@pytest.fixture
def proxy(client_conn, service) :
    proxy = TestProxy(connection = client_conn, bus_name = BUS_NAME, path = OBJECT_PATH)
    yield proxy
    proxy.close()
#end proxy

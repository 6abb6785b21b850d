"""
Tests of the signal-observer registry.
"""
#+
# Copyright 2026 the Satie contributors.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import pytest
import parade

def test_observers_receive_only_their_signal() :
    emitter = parade.SignalEmitter()
    seen = []
    emitter.connect("foo", lambda *args : seen.append(("foo", args)))
    emitter.connect("bar", lambda *args : seen.append(("bar", args)))
    emitter.emit("foo", 1, 2)
    emitter.emit("baz", 3)
    assert seen == [("foo", (1, 2))]
    assert emitter.has_handlers("bar")
    assert not emitter.has_handlers("baz")
#end test_observers_receive_only_their_signal

def test_observers_called_in_connection_order() :
    emitter = parade.SignalEmitter()
    seen = []
    for i in range(3) :
        emitter.connect("foo", lambda i = i : seen.append(i))
    #end for
    emitter.emit("foo")
    assert seen == [0, 1, 2]
#end test_observers_called_in_connection_order

def test_disconnect() :
    emitter = parade.SignalEmitter()
    seen = []
    id = emitter.connect("foo", seen.append)
    emitter.emit("foo", 1)
    emitter.disconnect(id)
    emitter.emit("foo", 2)
    assert seen == [1]
    with pytest.raises(ValueError) :
        emitter.disconnect(id)
    #end with
#end test_disconnect

def test_disconnect_during_emission() :
    emitter = parade.SignalEmitter()
    seen = []
    ids = {}

    def first() :
        seen.append("first")
        emitter.disconnect(ids["second"])
    #end first

    ids["first"] = emitter.connect("foo", first)
    ids["second"] = emitter.connect("foo", lambda : seen.append("second"))
    emitter.emit("foo")
    assert seen == ["first"]
#end test_disconnect_during_emission

def test_observer_exception_is_logged(caplog) :
    emitter = parade.SignalEmitter()
    seen = []

    def broken() :
        raise RuntimeError("observer failed")
    #end broken

    emitter.connect("foo", broken)
    emitter.connect("foo", lambda : seen.append("after"))
    emitter.emit("foo")
    assert seen == ["after"]
    assert "observer failed" in caplog.text
#end test_observer_exception_is_logged

def test_disconnect_all() :
    emitter = parade.SignalEmitter()
    seen = []
    emitter.connect("foo", seen.append)
    emitter.disconnect_all()
    emitter.emit("foo", 1)
    assert seen == []
    with pytest.raises(TypeError) :
        emitter.connect("foo", "not callable")
    #end with
#end test_disconnect_all

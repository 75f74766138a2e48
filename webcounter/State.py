from collections import namedtuple
from pythreader import Primitive, synchronized


class CounterPoisoned(Exception):
    pass


#
# Read-only, shared by all handlers without locking
#
AppInfo = namedtuple("AppInfo", ["name", "developer"])


class SharedCounter(Primitive):
    #
    # Usage:
    #
    #   counter = SharedCounter()
    #   n = counter.increment_and_read()        # 1, 2, 3, ...
    #
    # A failure inside the critical section poisons the counter: every later
    # increment raises CounterPoisoned until clear_poison() is called.
    #

    def __init__(self, initial=0):
        Primitive.__init__(self)
        self.Value = initial
        self.Poisoned = False

    def step(self, value):
        return value + 1

    @synchronized
    def increment_and_read(self):
        if self.Poisoned:
            raise CounterPoisoned("counter lock is poisoned, last value: %d" % (self.Value,))
        try:
            self.Value = self.step(self.Value)
        except Exception:
            self.Poisoned = True
            raise
        return self.Value

    @synchronized
    def value(self):
        return self.Value

    @synchronized
    def clear_poison(self):
        self.Poisoned = False

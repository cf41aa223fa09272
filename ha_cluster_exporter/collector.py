# vim: expandtab:ts=4
#
# Copyright 2026 The ha_cluster_exporter Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import abc, logging, os, subprocess, threading, time
from collections import OrderedDict

from .metrics import Descriptor, MetricSet, GAUGE, COUNTER

logger = logging.getLogger(__name__)

NAMESPACE = 'ha_cluster'

class CollectorError(Exception):
    pass

class CommandError(CollectorError):
    """The external command could not be run to completion."""

class CommandFailed(CommandError):
    def __init__(self, args, returncode, stderr):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__('%s exited with status %d: %s' %
                         (' '.join(args), returncode, stderr.strip() or 'no error output'))

class CommandTimeout(CommandError):
    pass

class ParseError(CollectorError):
    pass

class EmptyScrapeError(CollectorError):
    pass

def check_executable(path):
    if not os.path.isfile(path):
        raise CollectorError("'%s' does not exist" % path)
    if not os.access(path, os.X_OK):
        raise CollectorError("'%s' is not executable" % path)

def check_file(path):
    if not os.path.isfile(path):
        raise CollectorError("'%s' does not exist" % path)
    if not os.access(path, os.R_OK):
        raise CollectorError("'%s' is not readable" % path)

def run_command(args, timeout, ok_returncodes=(0,)):
    """Run a command and return its decoded standard output.

    The child is killed once ``timeout`` seconds have passed. Exit statuses
    outside ``ok_returncodes`` raise CommandFailed.
    """
    logger.debug('running %s', ' '.join(args))
    try:
        proc = subprocess.run(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                              stdin=subprocess.DEVNULL, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise CommandTimeout('%s timed out after %ss' % (' '.join(args), timeout))
    except OSError as e:
        raise CommandError('could not run %s: %s' % (args[0], e))

    stderr = proc.stderr.decode('utf-8', 'replace')
    if proc.returncode not in ok_returncodes:
        raise CommandFailed(args, proc.returncode, stderr)
    return proc.stdout.decode('utf-8', 'replace')

def read_file(path, limit=1 << 20):
    try:
        with open(path, 'rb') as fd:
            data = fd.read(limit + 1)
    except OSError as e:
        raise CollectorError('could not read %s: %s' % (path, e))
    if len(data) > limit:
        raise CollectorError('%s is larger than %d bytes' % (path, limit))
    return data.decode('utf-8', 'replace')

class SubsystemCollector(abc.ABC):
    @property
    @abc.abstractmethod
    def subsystem(self):
        pass

class InstrumentableCollector(abc.ABC):
    """A collector whose scrapes may be timed and accounted by InstrumentedCollector."""

    @abc.abstractmethod
    def scrape(self):
        """Return ``(families, error)`` for one coherent snapshot."""

class DefaultCollector(SubsystemCollector, InstrumentableCollector):
    """Base class of the subsystem collectors.

    Subclasses declare their descriptors in ``__init__`` with
    ``set_descriptor`` and implement ``collect_metrics``, which performs
    the I/O for one scrape and adds samples to the given MetricSet. Any
    CollectorError raised there fails the whole scrape.
    """
    subsystem = None

    def __init__(self, timeout=5, enable_timestamps=False):
        self.timeout = timeout
        self.enable_timestamps = enable_timestamps
        self.descriptors = OrderedDict()

    def set_descriptor(self, name, help, labels=(), kind=GAUGE):
        name = self.metric_name(name)
        if name in self.descriptors:
            raise ValueError('descriptor %s already defined' % name)
        self.descriptors[name] = Descriptor(name, help, kind, labels)

    def metric_name(self, name):
        return '%s_%s_%s' % (NAMESPACE, self.subsystem, name)

    def describe(self):
        for desc in self.descriptors.values():
            yield desc.family()

    def collect(self):
        families, _ = self.scrape()
        yield from families

    def scrape(self):
        metrics = MetricSet(self.descriptors, time.time() if self.enable_timestamps else None)
        try:
            self.collect_metrics(_SubsystemMetrics(self, metrics))
            if not metrics.sample_count():
                raise EmptyScrapeError('no samples collected')
        except CollectorError as e:
            logger.warning('%s scrape failed: %s', self.subsystem, e)
            return [], e
        except Exception as e:
            logger.exception('%s scrape failed unexpectedly', self.subsystem)
            return [], e
        return metrics.families(), None

    @abc.abstractmethod
    def collect_metrics(self, metrics):
        pass

class _SubsystemMetrics(object):
    # Lets collectors add samples by their short metric name.
    def __init__(self, collector, metrics):
        self.collector = collector
        self.metrics = metrics

    def add(self, name, labels, value):
        self.metrics.add(self.collector.metric_name(name), labels, value)

    def one_hot(self, name, labels, states, current):
        for state in states:
            self.add(name, list(labels) + [state], 1 if state == current else 0)

class InstrumentedCollector(SubsystemCollector):
    """Wraps a collector, adding scrape duration, success and error metrics."""

    def __init__(self, collector):
        self.collector = collector
        self._lock = threading.Lock()
        self._errors = 0
        prefix = '%s_%s_scrape_' % (NAMESPACE, collector.subsystem)
        self.duration = Descriptor(prefix + 'duration_seconds',
                                   'Duration of the last %s scrape' % collector.subsystem,
                                   GAUGE, ['collector'])
        self.success = Descriptor(prefix + 'success',
                                  'Whether the last %s scrape succeeded' % collector.subsystem,
                                  GAUGE, ['collector'])
        self.errors = Descriptor(prefix + 'errors',
                                 'Number of failed %s scrapes' % collector.subsystem,
                                 COUNTER, ['collector'])

    @property
    def subsystem(self):
        return self.collector.subsystem

    def describe(self):
        yield from self.collector.describe()
        for desc in (self.duration, self.success, self.errors):
            yield desc.family()

    def collect(self):
        start = time.monotonic()
        families, error = self.collector.scrape()
        duration = time.monotonic() - start

        with self._lock:
            if error is not None:
                self._errors += 1
            errors = self._errors

        yield from families
        labels = [self.subsystem]
        for desc, value in ((self.duration, duration),
                            (self.success, 0 if error is not None else 1),
                            (self.errors, errors)):
            family = desc.family()
            family.add_metric(labels, value)
            yield family

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

from collections import namedtuple
from prometheus_client.core import GaugeMetricFamily, CounterMetricFamily

GAUGE = 'gauge'
COUNTER = 'counter'

_FAMILIES = {
    GAUGE: GaugeMetricFamily,
    COUNTER: CounterMetricFamily,
}

class Descriptor(namedtuple('Descriptor', 'name help kind labels')):
    """Static metadata of one metric family: name, help text, type and label schema."""
    __slots__ = ()

    def __new__(cls, name, help, kind=GAUGE, labels=()):
        if kind not in _FAMILIES:
            raise ValueError('unknown metric kind %r' % kind)
        return super().__new__(cls, name, help, kind, tuple(labels))

    def family(self):
        return _FAMILIES[self.kind](self.name, self.help, labels=self.labels)

class MetricSet(object):
    """Samples gathered during one scrape, grouped by descriptor.

    Every sample added to a set carries the same timestamp (or none), so a
    set always reflects a single snapshot.
    """
    def __init__(self, descriptors, timestamp=None):
        self.descriptors = descriptors
        self.timestamp = timestamp
        self._families = {}

    def add(self, name, labels, value):
        try:
            desc = self.descriptors[name]
        except KeyError:
            raise ValueError('unknown metric %r' % name)
        labels = [str(l) for l in labels]
        if len(labels) != len(desc.labels):
            raise ValueError('metric %s expects labels %s, got %r' %
                             (name, ', '.join(desc.labels), labels))
        family = self._families.get(name)
        if family is None:
            family = self._families[name] = desc.family()
        family.add_metric(labels, value, timestamp=self.timestamp)

    def families(self):
        return [self._families[name] for name in self.descriptors
                if name in self._families]

    def sample_count(self):
        return sum(len(f.samples) for f in self._families.values())

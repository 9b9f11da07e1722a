# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Renders the startup plan of a stack: dependency waves, the condition each
service waits for, volume users, health checks and restart policies.
"""
from jinja2 import Template

from ..MODELS.orchestration_config import OrchestrationConfig
from ..RUNNERS.dependency_resolver import DependencyResolver

PLAN_TEMPLATE = """\
Project: {{ project }}
Network{{ 's' if networks|length != 1 else '' }}: {% for n in networks %}{{ n.name if n.external else project ~ "_" ~ n.name }} ({{ n.driver }}){% if not loop.last %}, {% endif %}{% endfor %}

Volumes: {{ volumes | join(', ') if volumes else '(none)' }}
{% for v in volumes %}
  {{ v }}: used by {{ volume_users[v] | join(', ') if volume_users[v] else 'no service' }}
{% endfor %}
{% for wave in waves %}
Wave {{ loop.index }}:
{% for svc in wave %}
  {{ svc.name }}
{% if svc.depends_on %}
    waits for: {% for e in svc.depends_on %}{{ e.target }} ({{ conditions[e.condition.value] }}){% if not loop.last %}, {% endif %}{% endfor %}

{% endif %}
{% if svc.has_health_check %}
    health:    every {{ svc.health_check.interval }}s, {{ svc.health_check.retries }} retries, timeout {{ svc.health_check.timeout }}s
{% endif %}
    restart:   {{ svc.restart_policy.condition.value }}{% if svc.restart_policy.condition.value != 'none' %} (max {{ svc.restart_policy.max_attempts if svc.restart_policy.max_attempts is not none else 'unlimited' }}, delay {{ svc.restart_policy.delay }}s){% endif %}

{% for p in svc.ports %}
    publish:   {{ p.host_ip }}:{{ p.host_port if p.host_port else '(any)' }} -> {{ p.container_port }}/{{ p.protocol }}
{% endfor %}
{% endfor %}
{% endfor %}"""

CONDITION_LABELS = {
    "service_started": "started",
    "service_healthy": "healthy",
}


class PlanRenderer:
    """
    Renders a human readable startup plan for a stack.
    """

    def __init__(self, config: OrchestrationConfig, project: str):
        """
        :param config: The validated stack.
        :param project: Project name the stack would be deployed as.
        """
        self.config = config
        self.project = project
        self.template = Template(PLAN_TEMPLATE, trim_blocks=True, lstrip_blocks=True)

    def render(self) -> str:
        waves = DependencyResolver().resolve_waves(self.config)
        return self.template.render(
            project=self.project,
            networks=list(self.config.networks.values()),
            volumes=list(self.config.volumes),
            volume_users={name: self.config.users_of_volume(name) for name in self.config.volumes},
            waves=[[self.config.services[name] for name in wave] for wave in waves],
            conditions=CONDITION_LABELS,
        )

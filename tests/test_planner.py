import pytest

from conftest import FakeProvisioner
from s3nfs_deploy.orchestrator.executor import DeploymentExecutor
from s3nfs_deploy.orchestrator.planner import DeploymentPlanner, ReplacementOrder
from s3nfs_deploy.provisioners.base import ChangeType
from s3nfs_deploy.state.models import Resource
from s3nfs_deploy.topology.builder import (
    CACHE_VOLUME,
    FILE_SHARE_ROLE,
    GATEWAY_APPLIANCE,
    NFS_FILE_SHARE,
    STORAGE_GATEWAY,
    TopologyBuilder,
    UPLOAD_TOPIC,
)
from s3nfs_deploy.topology.descriptors import CustomDescriptor
from s3nfs_deploy.topology.graph import ResourceGraph
from s3nfs_deploy.topology.references import Ref
from s3nfs_deploy.utils.errors import ConfigurationError, DependencyCycleError


def apply(provisioners, graph, state):
    planner = DeploymentPlanner(provisioners)
    plan = planner.create_deployment_plan(graph, state)
    result = DeploymentExecutor(provisioners, parallelism=4).execute(plan, state, graph)
    assert result.success, result.error
    return result.state


def build(variables, **changes):
    return TopologyBuilder(variables.model_copy(update=changes), 'us-east-1',
                           project_name='demo', environment='test').build()


def recorded(rid, deps=(), physical_id=None, **properties):
    return Resource(id=rid, type='thing', physical_id=physical_id or f"thing-{rid}",
                    properties=properties, dependencies=list(deps))


class TestDeploymentPlan:

    def test_fresh_state_creates_everything(self, provisioners, topology, empty_state):
        plan = DeploymentPlanner(provisioners).create_deployment_plan(topology, empty_state)

        assert plan.get_summary()['create'] == len(topology)
        assert {step.action for step in plan.steps.values()} == {'create'}
        assert plan.steps['create:nfs-file-share'].depends_on == {
            'create:storage-gateway', 'create:file-share-role'
        }

    def test_ordered_steps_respect_dependencies(self, provisioners, topology, empty_state):
        plan = DeploymentPlanner(provisioners).create_deployment_plan(topology, empty_state)
        order = [step.resource_id for step in plan.ordered_steps()]

        assert order.index(GATEWAY_APPLIANCE) < order.index(CACHE_VOLUME)
        assert order.index(CACHE_VOLUME) < order.index(STORAGE_GATEWAY)
        assert order.index(STORAGE_GATEWAY) < order.index(NFS_FILE_SHARE)

    def test_reapply_is_noop(self, cloud, provisioners, topology, empty_state):
        state = apply(provisioners, topology, empty_state)
        calls = list(cloud.calls)

        plan = DeploymentPlanner(provisioners).create_deployment_plan(topology, state)

        assert not plan.has_changes()
        assert plan.get_summary()['no_change'] == len(topology)
        assert cloud.calls == calls

    def test_mutable_change_updates_in_place(self, provisioners, variables, topology, empty_state):
        state = apply(provisioners, topology, empty_state)

        plan = DeploymentPlanner(provisioners).create_deployment_plan(
            build(variables, default_storage_class='S3_STANDARD_IA'), state
        )

        assert set(plan.steps) == {'update:nfs-file-share'}
        change = plan.changes[NFS_FILE_SHARE]
        assert change.change_type == ChangeType.UPDATE
        assert change.changed_attributes == ['DefaultStorageClass']
        assert plan.affected == {NFS_FILE_SHARE}

    def test_immutable_change_cascades_replacement(self, cloud, provisioners, variables,
                                                   topology, empty_state):
        state = apply(provisioners, topology, empty_state)
        old_ids = {rid: r.physical_id for rid, r in state.resources.items()}
        desired = build(variables, instance_type='m5.2xlarge')

        plan = DeploymentPlanner(provisioners).create_deployment_plan(desired, state)
        changes = plan.changes

        assert changes[GATEWAY_APPLIANCE].change_type == ChangeType.REPLACE
        assert changes[CACHE_VOLUME].change_type == ChangeType.REPLACE
        assert changes[STORAGE_GATEWAY].change_type == ChangeType.REPLACE
        assert changes[NFS_FILE_SHARE].change_type == ChangeType.REPLACE
        assert changes[FILE_SHARE_ROLE].change_type == ChangeType.NO_CHANGE
        assert changes[UPLOAD_TOPIC].change_type == ChangeType.NO_CHANGE

        assert changes[GATEWAY_APPLIANCE].replacement_order == ReplacementOrder.CREATE_BEFORE_DESTROY
        assert changes[STORAGE_GATEWAY].replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE
        assert changes[NFS_FILE_SHARE].replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE
        assert 'delete:nfs-file-share' in plan.steps['create:nfs-file-share'].depends_on
        assert {'create:gateway-appliance', 'delete:cache-volume:deposed'} <= \
            plan.steps['delete:gateway-appliance:deposed'].depends_on

        cloud.calls.clear()
        result = DeploymentExecutor(provisioners).execute(plan, state, desired)

        assert result.success
        calls = cloud.calls
        assert calls.index('create:gateway-appliance') < calls.index('destroy:gateway-appliance')
        assert calls.index('destroy:nfs-file-share') < calls.index('create:nfs-file-share')
        assert calls.index('destroy:cache-volume') < calls.index('destroy:gateway-appliance')
        assert result.state.deposed == {}
        assert result.state.get_resource(GATEWAY_APPLIANCE).physical_id != old_ids[GATEWAY_APPLIANCE]
        assert result.state.get_resource(FILE_SHARE_ROLE).physical_id == old_ids[FILE_SHARE_ROLE]
        assert len(cloud.objects) == len(desired)

    def test_destroy_before_create_forces_dependents(self, cloud, provisioners, empty_state):
        provisioners['solo'] = FakeProvisioner('solo', cloud, allows_overlap=False)

        def graph(name):
            return ResourceGraph([
                CustomDescriptor('a', 'solo', {'Name': name}),
                CustomDescriptor('b', 'thing', {'Parent': Ref('a')}, depends_on=['a']),
            ])

        state = apply(provisioners, graph('first'), empty_state)
        plan = DeploymentPlanner(provisioners).create_deployment_plan(graph('second'), state)

        assert plan.changes['a'].replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE
        assert plan.changes['b'].replacement_order == ReplacementOrder.DESTROY_BEFORE_CREATE
        assert plan.steps['delete:a'].depends_on == {'delete:b'}

        cloud.calls.clear()
        result = DeploymentExecutor(provisioners).execute(plan, state, graph('second'))

        assert result.success
        assert cloud.calls == ['destroy:b', 'destroy:a', 'create:a', 'wait:a', 'create:b', 'wait:b']

    def test_mutable_reference_to_destroy_first_resource_replaces(self, cloud, provisioners,
                                                                   empty_state):
        provisioners['solo'] = FakeProvisioner('solo', cloud, allows_overlap=False)
        provisioners['flexible'] = FakeProvisioner('flexible', cloud, mutable_attributes={'Parent'})

        def graph(name):
            return ResourceGraph([
                CustomDescriptor('a', 'solo', {'Name': name}),
                CustomDescriptor('b', 'flexible', {'Parent': Ref('a')}, depends_on=['a']),
                CustomDescriptor('c', 'flexible', {'Parent': Ref('b')}, depends_on=['b']),
            ])

        state = apply(provisioners, graph('first'), empty_state)
        plan = DeploymentPlanner(provisioners).create_deployment_plan(graph('second'), state)

        assert plan.changes['b'].change_type == ChangeType.REPLACE
        assert plan.changes['c'].change_type == ChangeType.REPLACE
        assert {change.replacement_order for change in plan.changes.values()} == {
            ReplacementOrder.DESTROY_BEFORE_CREATE
        }
        order = [step.step_id for step in plan.ordered_steps()]
        assert order[:3] == ['delete:c', 'delete:b', 'delete:a']

    def test_reference_to_replaced_resource_updates_mutable_dependent(self, cloud, provisioners,
                                                                      empty_state):
        provisioners['flexible'] = FakeProvisioner('flexible', cloud, mutable_attributes={'Parent'})

        def graph(name):
            return ResourceGraph([
                CustomDescriptor('a', 'thing', {'Name': name}),
                CustomDescriptor('b', 'flexible', {'Parent': Ref('a')}, depends_on=['a']),
            ])

        state = apply(provisioners, graph('first'), empty_state)
        plan = DeploymentPlanner(provisioners).create_deployment_plan(graph('second'), state)

        assert plan.changes['a'].change_type == ChangeType.REPLACE
        assert plan.changes['b'].change_type == ChangeType.UPDATE
        assert plan.changes['b'].changed_attributes == ['Parent']
        assert plan.steps['update:b'].depends_on == {'create:a'}
        assert 'update:b' in plan.steps['delete:a:deposed'].depends_on

        result = DeploymentExecutor(provisioners).execute(plan, state, graph('second'))

        assert result.success
        new_a = result.state.get_resource('a').physical_id
        assert result.state.get_resource('b').metadata['attributes']['Parent'] == new_a
        assert cloud.calls[-1] == 'destroy:a'

    def test_cycle_fails_before_any_provider_call(self, cloud, provisioners, empty_state):
        graph = ResourceGraph([
            CustomDescriptor('a', 'thing', depends_on=['c']),
            CustomDescriptor('b', 'thing', depends_on=['a']),
            CustomDescriptor('c', 'thing', depends_on=['b']),
        ])

        with pytest.raises(DependencyCycleError):
            DeploymentPlanner(provisioners).create_deployment_plan(graph, empty_state)
        assert cloud.calls == []

    def test_unknown_type_is_a_configuration_error(self, provisioners, empty_state):
        graph = ResourceGraph([CustomDescriptor('a', 'mystery')])

        with pytest.raises(ConfigurationError):
            DeploymentPlanner(provisioners).create_deployment_plan(graph, empty_state)

    def test_tainted_resource_is_replaced(self, provisioners, empty_state):
        tainted = recorded('a', Name='x')
        tainted.mark_tainted('never became ready')
        empty_state.add_resource(tainted)
        graph = ResourceGraph([CustomDescriptor('a', 'thing', {'Name': 'x'})])

        plan = DeploymentPlanner(provisioners).create_deployment_plan(graph, empty_state)

        assert plan.changes['a'].change_type == ChangeType.REPLACE
        assert plan.changes['a'].reason == 'Resource is tainted'

    def test_removed_resources_are_deleted_dependents_first(self, provisioners, empty_state):
        empty_state.add_resource(recorded('a'))
        empty_state.add_resource(recorded('b', deps=['a']))

        plan = DeploymentPlanner(provisioners).create_deployment_plan(ResourceGraph(), empty_state)

        assert plan.get_summary()['delete'] == 2
        assert [step.step_id for step in plan.ordered_steps()] == ['delete:b', 'delete:a']

    def test_leftover_deposed_copy_is_cleaned_up(self, cloud, provisioners, empty_state):
        empty_state.add_resource(recorded('a', physical_id='thing-new', Name='x'))
        empty_state.deposed['a'] = recorded('a', physical_id='thing-old', Name='x')
        cloud.objects['thing-old'] = 'a'
        graph = ResourceGraph([CustomDescriptor('a', 'thing', {'Name': 'x'})])

        plan = DeploymentPlanner(provisioners).create_deployment_plan(graph, empty_state)

        assert set(plan.steps) == {'delete:a:deposed:leftover'}
        result = DeploymentExecutor(provisioners).execute(plan, empty_state, graph)
        assert result.success
        assert result.state.deposed == {}
        assert result.state.get_resource('a').physical_id == 'thing-new'
        assert 'thing-old' not in cloud.objects


class TestDestructionPlan:

    def test_reverse_dependency_order(self, provisioners, empty_state):
        empty_state.add_resource(recorded('a'))
        empty_state.add_resource(recorded('b', deps=['a']))
        empty_state.add_resource(recorded('c', deps=['b']))

        plan = DeploymentPlanner(provisioners).create_destruction_plan(empty_state)

        assert plan.destroy
        assert [step.step_id for step in plan.ordered_steps()] == [
            'delete:c', 'delete:b', 'delete:a'
        ]

    def test_deposed_copies_are_destroyed_before_their_dependencies(self, provisioners,
                                                                    empty_state):
        empty_state.add_resource(recorded('a'))
        empty_state.add_resource(recorded('b', deps=['a']))
        empty_state.deposed['b'] = recorded('b', deps=['a'], physical_id='thing-old-b')

        plan = DeploymentPlanner(provisioners).create_destruction_plan(empty_state)

        assert plan.steps['delete:a'].depends_on == {'delete:b', 'delete:b:deposed'}
        assert plan.get_summary()['deposed'] == 1

    def test_full_topology_teardown(self, cloud, provisioners, topology, empty_state):
        state = apply(provisioners, topology, empty_state)
        plan = DeploymentPlanner(provisioners).create_destruction_plan(state)

        cloud.calls.clear()
        result = DeploymentExecutor(provisioners).execute(plan, state)

        assert result.success
        assert result.state.resources == {}
        assert cloud.objects == {}
        destroyed = cloud.calls_for('destroy')
        assert destroyed.index(NFS_FILE_SHARE) < destroyed.index(STORAGE_GATEWAY)
        assert destroyed.index(STORAGE_GATEWAY) < destroyed.index(CACHE_VOLUME)
        assert destroyed.index(CACHE_VOLUME) < destroyed.index(GATEWAY_APPLIANCE)

"""Image, network and volume tests."""

import pytest

from stackyard.core.exceptions import EngineError
from stackyard.models.engine import (
    RawDiskUsage,
    RawImageDetail,
    RawImageSummary,
    RawNetwork,
    RawPruneResult,
    RawVolume,
)
from stackyard.models.network import NetworkCreate
from stackyard.models.volume import VolumeCreate
from stackyard.services.images import ImageService, image_from_detail, image_from_summary
from stackyard.services.networks import NetworkService, network_config, normalize_network
from stackyard.services.volumes import VolumeService

from fakes import make_summary


def image_summary(image_id, tags=None, digests=None, size=100):
    return RawImageSummary(Id=image_id, RepoTags=tags, RepoDigests=digests, Size=size, Created=1700000000)


class TestImages:
    """Tests for image normalization and ImageService."""

    def test_name_from_first_tag(self):
        """Test the first tag names the image."""
        image = image_from_summary(image_summary("sha256:abc", tags=["nginx:1.25", "nginx:latest"]))
        assert image.name == "nginx:1.25"
        assert image.tags == ["nginx:1.25", "nginx:latest"]

    def test_name_from_digest_repository(self):
        """Test untagged images fall back to the digest repository."""
        image = image_from_summary(
            image_summary("sha256:abc", tags=["<none>:<none>"], digests=["redis@sha256:feed"])
        )
        assert image.name == "redis"
        assert image.tags == []
        assert image.repository == "redis"
        assert image.digest == "sha256:feed"

    def test_name_from_short_id(self):
        """Test dangling images use the short id."""
        image = image_from_summary(image_summary("sha256:0123456789abcdef"))
        assert image.name == "0123456789ab"

    def test_detail_config(self):
        """Test detail config normalization."""
        raw = RawImageDetail.model_validate(
            {
                "Id": "sha256:abc",
                "RepoTags": ["app:1"],
                "Created": "2024-05-01T12:00:00Z",
                "Architecture": "amd64",
                "Os": "linux",
                "Author": "",
                "Config": {
                    "Entrypoint": None,
                    "Cmd": ["serve"],
                    "ExposedPorts": {"8080/tcp": {}},
                    "Volumes": {"/data": {}},
                    "Env": ["PATH=/usr/bin", "MODE=prod"],
                    "Healthcheck": {"Test": ["NONE"]},
                    "WorkingDir": "",
                },
            }
        )
        image = image_from_detail(raw)
        assert image.config.entrypoint is None
        assert image.config.cmd == ["serve"]
        assert image.config.exposed_ports == ["8080/tcp"]
        assert image.config.volumes == ["/data"]
        assert image.config.env["MODE"] == "prod"
        assert image.config.healthcheck is None
        assert image.config.working_dir is None
        assert image.author is None
        assert image.created > 0

    @pytest.mark.asyncio
    async def test_get_image_lists_containers(self, engine):
        """Test image detail lists the containers created from it."""
        engine.image_details["app:1"] = RawImageDetail(Id="sha256:img", RepoTags=["app:1"])
        engine.containers = [
            make_summary("a", name="web", image_id="sha256:img"),
            make_summary("b", name="other", image_id="sha256:else"),
        ]
        image = await ImageService(engine).get_image("app:1")
        assert [(c.id, c.name) for c in image.containers] == [("a", "web")]

    @pytest.mark.asyncio
    async def test_get_missing_image(self, engine):
        """Test a missing image returns None."""
        assert await ImageService(engine).get_image("ghost") is None

    @pytest.mark.asyncio
    async def test_prune_counts_image_delta(self, engine):
        """Test the deleted count is the drop in image count, not layer count."""
        engine.images = [image_summary("sha256:1"), image_summary("sha256:2"), image_summary("sha256:3")]
        engine.prune_results["images"] = RawPruneResult(
            ImagesDeleted=[
                {"Untagged": "old:1"},
                {"Deleted": "sha256:1"},
                {"Deleted": "sha256:layer1"},
                {"Deleted": "sha256:layer2"},
            ],
            SpaceReclaimed=500,
        )
        result = await ImageService(engine).prune(all=True)
        assert result.images_deleted == 1
        assert result.space_reclaimed == 500
        assert engine.called("prune_images")[0][2]["all"] is True


class TestNetworks:
    """Tests for network normalization and NetworkService."""

    def test_builtin_cannot_be_deleted(self):
        """Test built-in networks are never deletable."""
        network = normalize_network(RawNetwork(Id="n1", Name="bridge"), container_count=0)
        assert not network.actions.can_delete

    def test_in_use_cannot_be_deleted(self):
        """Test networks with containers are not deletable."""
        raw = RawNetwork(Id="n1", Name="app_default")
        assert not normalize_network(raw, container_count=2).actions.can_delete
        assert normalize_network(raw, container_count=0).actions.can_delete

    def test_ipam_from_first_config(self):
        """Test IPAM uses the first config entry."""
        raw = RawNetwork.model_validate(
            {
                "Id": "n1",
                "Name": "app",
                "IPAM": {"Config": [{"Subnet": "172.20.0.0/16", "Gateway": "172.20.0.1"}, {"Subnet": "fd00::/64"}]},
            }
        )
        network = normalize_network(raw)
        assert network.ipam.subnet == "172.20.0.0/16"
        assert network.ipam.gateway == "172.20.0.1"

    def test_network_config(self):
        """Test create requests map to the Engine payload."""
        config = network_config(NetworkCreate(name="backend", subnet="10.1.0.0/24"))
        assert config == {
            "Name": "backend",
            "Driver": "bridge",
            "IPAM": {"Config": [{"Subnet": "10.1.0.0/24"}]},
        }

    @pytest.mark.asyncio
    async def test_list_counts_containers(self, engine):
        """Test the list view counts containers through their network settings."""
        engine.networks = [RawNetwork(Id="n1", Name="app"), RawNetwork(Id="n2", Name="idle")]
        engine.containers = [
            make_summary("a", NetworkSettings={"Networks": {"app": {}}}),
            make_summary("b", NetworkSettings={"Networks": {"app": {}, "bridge": {}}}),
        ]
        networks = await NetworkService(engine).list_networks()
        counts = {n.name: n.container_count for n in networks}
        assert counts == {"app": 2, "idle": 0}

    @pytest.mark.asyncio
    async def test_detail_lists_containers(self, engine):
        """Test the detail view lists attached containers."""
        engine.networks = [
            RawNetwork.model_validate(
                {
                    "Id": "n1",
                    "Name": "app",
                    "Containers": {"c1": {"Name": "web", "IPv4Address": "172.20.0.2/16"}},
                }
            )
        ]
        network = await NetworkService(engine).get_network("app")
        assert network.container_count == 1
        assert network.containers[0].name == "web"
        assert not network.actions.can_delete

    @pytest.mark.asyncio
    async def test_get_missing_network(self, engine):
        """Test a missing network returns None."""
        assert await NetworkService(engine).get_network("ghost") is None


class TestVolumes:
    """Tests for VolumeService."""

    @pytest.fixture
    def volume_mounts(self):
        return [{"Type": "volume", "Name": "pgdata", "Destination": "/var/lib/postgresql/data"}]

    @pytest.mark.asyncio
    async def test_list_sizes_and_counts(self, engine, volume_mounts):
        """Test sizes come from disk usage and counts from mounts."""
        engine.volumes = [RawVolume(Name="pgdata"), RawVolume(Name="unused")]
        engine.containers = [make_summary("db", Mounts=volume_mounts)]
        engine.df = RawDiskUsage.model_validate(
            {"Volumes": [{"Name": "pgdata", "UsageData": {"Size": 2048, "RefCount": 1}}]}
        )
        volumes = {v.name: v for v in await VolumeService(engine).list_volumes()}
        assert volumes["pgdata"].size == 2048
        assert volumes["pgdata"].container_count == 1
        assert not volumes["pgdata"].actions.can_delete
        assert volumes["unused"].size is None
        assert volumes["unused"].actions.can_delete

    @pytest.mark.asyncio
    async def test_detail_tolerates_disk_usage_failure(self, engine, volume_mounts):
        """Test volume detail survives a failing df with an unknown size."""
        engine.volumes = [RawVolume(Name="pgdata")]
        engine.containers = [make_summary("db", name="postgres", Mounts=volume_mounts)]
        engine.df_error = EngineError("Disk usage: busy", status_code=500)
        volume = await VolumeService(engine).get_volume("pgdata")
        assert volume.size is None
        assert [c.name for c in volume.containers] == ["postgres"]

    @pytest.mark.asyncio
    async def test_create_volume(self, engine):
        """Test create requests map to the Engine payload."""
        await VolumeService(engine).create_volume(VolumeCreate(name="cache", labels={"team": "a"}))
        config = engine.called("create_volume")[0][1][0]
        assert config == {"Name": "cache", "Driver": "local", "Labels": {"team": "a"}}

    @pytest.mark.asyncio
    async def test_prune(self, engine):
        """Test prune reports removed volumes."""
        engine.prune_results["volumes"] = RawPruneResult(VolumesDeleted=["a", "b"], SpaceReclaimed=10)
        result = await VolumeService(engine).prune(all=True)
        assert result.volumes_deleted == ["a", "b"]
        assert engine.called("prune_volumes")[0][2]["all"] is True

"""
敏感字段解密 - RSA-OAEP 分块密文
"""

import base64
import binascii
from pathlib import Path
from typing import List, Optional, Sequence, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ct_replica.errors import DecryptionError
from ct_replica.models.entity import RowChangeRecord
from ct_replica.utils.logging import get_logger

logger = get_logger(__name__)

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA1()),
    algorithm=hashes.SHA1(),
    label=None,
)


def base64_block_size(key_size_bits: int) -> int:
    """
    一个 RSA 密文块对应的 base64 字符数

    示例:
        >>> base64_block_size(2048)
        344
    """
    key_bytes = key_size_bits // 8
    blocks = key_bytes // 3
    return blocks * 4 + 4 if key_bytes % 3 else blocks * 4


class FieldDecryptor:
    """
    字段解密器

    密文由若干等长 base64 块拼接而成，块长由密钥长度决定。
    每块解码后字节逆序，再用 RSA-OAEP(SHA-1) 解密，
    全部明文拼接后按 UTF-32-LE 解码。

    示例:
        ```python
        decryptor = FieldDecryptor.from_file("/secrets/replica.pem")
        records = decryptor.decrypt_records("Accounts", records, ["EmailAddress"])
        ```
    """

    def __init__(self, private_key: rsa.RSAPrivateKey):
        self._key = private_key
        self._block_size = base64_block_size(private_key.key_size)

    @classmethod
    def from_file(
        cls,
        key_path: Union[str, Path],
        password: Optional[str] = None,
    ) -> "FieldDecryptor":
        """
        从 PEM 私钥文件创建

        异常:
            DecryptionError: 文件不可读或不是 RSA 私钥
        """
        try:
            pem = Path(key_path).read_bytes()
            key = serialization.load_pem_private_key(
                pem, password=password.encode("utf-8") if password else None
            )
        except (OSError, ValueError, TypeError) as e:
            raise DecryptionError(f"无法加载私钥 {key_path}: {e}") from e

        if not isinstance(key, rsa.RSAPrivateKey):
            raise DecryptionError(f"私钥不是 RSA 密钥: {key_path}")
        return cls(key)

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        解密单个值

        空值原样返回。

        异常:
            DecryptionError: 密文格式错误或无法解密
        """
        if not value:
            return value

        if len(value) % self._block_size != 0:
            raise DecryptionError(
                f"密文长度 {len(value)} 不是块长 {self._block_size} 的整数倍"
            )

        plain = bytearray()
        try:
            for start in range(0, len(value), self._block_size):
                block = base64.b64decode(value[start:start + self._block_size], validate=True)
                plain.extend(self._key.decrypt(block[::-1], _OAEP))
            return plain.decode("utf-32-le")
        except (binascii.Error, ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"无法解密字段值: {e}") from e

    def decrypt_records(
        self,
        table: str,
        records: List[RowChangeRecord],
        fields: Sequence[str],
    ) -> List[RowChangeRecord]:
        """
        解密行中的敏感字段

        返回新的记录列表，任一值失败时整体失败，不返回部分解密的行。

        参数:
            table: 表名
            records: 源行
            fields: 敏感字段

        返回:
            解密后的记录

        异常:
            DecryptionError: 带表名和字段名
        """
        result = []
        for record in records:
            data = dict(record.data)
            for field in fields:
                if field not in data:
                    continue
                try:
                    data[field] = self.decrypt(data[field])
                except DecryptionError as e:
                    raise DecryptionError(
                        f"{table}.{field} 解密失败: {e}", table=table, field=field
                    ) from e
            result.append(record.model_copy(update={"data": data}))

        logger.debug("fields_decrypted", table=table, fields=list(fields), count=len(result))
        return result

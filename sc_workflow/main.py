"""
主入口程序 - 支持断点续传

单细胞RNA-seq数据处理流程命令行接口：
读取 → 空液滴识别 → 质控 → 标准化 → 聚类 → 标记基因
"""

import os
import sys
import gc
import logging
import argparse
import traceback

import yaml

from sc_workflow.config import load_config, resolve_params
from sc_workflow.io import read_input, read_sample, annotate_genes, read_h5ad, save_h5ad, save_csv, BackedMatrix
from sc_workflow.preprocessing import call_cells, quality_control, normalize_data
from sc_workflow.clustering import data_clustering
from sc_workflow.annotation import marker_detection, classify_cell_cycle
from sc_workflow.utils import MemoryMonitor, CheckpointManager

SKIP_TARGETS = {
    'cell_calling': 'step2_cell_calling',
    'qc': 'step3_qc',
    'normalize': 'step4_normalize',
    'cluster': 'step5_cluster',
    'markers': 'step6_markers'
}


def get_args(argv=None):
    """解析命令行参数（未指定的参数为 None，使用配置文件中的值）"""
    parser = argparse.ArgumentParser(
        description="单细胞RNA-seq数据处理流程 (支持断点续传)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # 输入输出
    io_group = parser.add_argument_group('输入输出')
    source = io_group.add_mutually_exclusive_group()
    source.add_argument("--input",
                        help="单个样品：10x 矩阵目录、tar 压缩包或 h5ad 文件")
    source.add_argument("--sample_info",
                        help="样品信息CSV文件路径 (必须包含 Path 和 SampleName 列)")
    io_group.add_argument("--output_dir", default="./results",
                          help="输出目录")
    io_group.add_argument("--config", default=None,
                          help="YAML 配置文件，覆盖默认参数")
    io_group.add_argument("--backed", action='store_true', default=None,
                          help="以文件映射方式读取 h5ad 输入，先按 --min_total 预过滤再载入内存")
    io_group.add_argument("--min_total", type=float, default=None,
                          help="backed 模式下保留的最低条码总计数")
    io_group.add_argument("--gene_annotation", default=None,
                          help="基因注释表（TSV/CSV，含 gene_ids 与 chromosome 等列）")

    # 断点控制参数
    checkpoint_group = parser.add_argument_group('断点续传控制')
    checkpoint_group.add_argument("--resume", action='store_true',
                                  help="从上次断点继续运行")
    checkpoint_group.add_argument("--reset", action='store_true',
                                  help="重置所有断点，从头开始")
    checkpoint_group.add_argument("--skip-to", dest='skip_to',
                                  choices=list(SKIP_TARGETS),
                                  help="跳过到指定步骤（前面的步骤需已有结果文件）")
    checkpoint_group.add_argument("--show-progress", dest='show_progress', action='store_true',
                                  help="只显示当前进度，不运行")

    # 空液滴识别参数
    cc_group = parser.add_argument_group('空液滴识别参数')
    cc_group.add_argument("--skip_cell_calling", action='store_true',
                          help="输入已是过滤后的细胞，不做空液滴识别")
    cc_group.add_argument("--lower", type=float, default=None,
                          help="环境 RNA 条码的总计数上限")
    cc_group.add_argument("--retain", type=float, default=None,
                          help="总计数不低于此值的条码直接判为细胞（默认 knee 点）")
    cc_group.add_argument("--niters", type=int, default=None,
                          help="Monte-Carlo 迭代次数")
    cc_group.add_argument("--empty_fdr", type=float, default=None,
                          help="判为细胞的 FDR 阈值")
    cc_group.add_argument("--test_ambient", action='store_true', default=None,
                          help="同时检验低计数条码")
    cc_group.add_argument("--empty_seed", type=int, default=None,
                          help="emptyDrops 随机种子")
    cc_group.add_argument("--n_jobs", type=int, default=None,
                          help="emptyDrops 并行进程数")

    # 质控参数
    qc_group = parser.add_argument_group('质控参数')
    qc_group.add_argument("--nmads", type=float, default=None,
                          help="自适应阈值的 MAD 倍数")
    qc_group.add_argument("--batch_key", default=None,
                          help="批次列名（质控阈值与批次校正）")
    qc_group.add_argument("--min_genes", type=int, default=None,
                          help="每个细胞的最低基因数（固定阈值）")
    qc_group.add_argument("--max_genes", type=int, default=None,
                          help="每个细胞的最高基因数（固定阈值）")
    qc_group.add_argument("--max_pct_mito", type=float, default=None,
                          help="最大线粒体基因百分比（固定阈值）")
    qc_group.add_argument("--doublet_method", default=None,
                          choices=["scrublet", "none"],
                          help="双胞检测方法")
    qc_group.add_argument("--doublet_threshold", type=float, default=None,
                          help="双胞检测阈值")

    # 标准化参数
    norm_group = parser.add_argument_group('标准化参数')
    norm_group.add_argument("--no_quick_cluster", action='store_true',
                            help="不做预聚类，所有细胞一起计算 size factor")
    norm_group.add_argument("--min_size", type=int, default=None,
                            help="预聚类的最小聚类大小")
    norm_group.add_argument("--norm_min_mean", type=float, default=None,
                            help="参与反卷积的基因最低平均计数")

    # 聚类参数
    cl_group = parser.add_argument_group('方差建模与聚类参数')
    cl_group.add_argument("--trend_model", default=None, choices=["poisson", "empirical"],
                          help="技术方差模型")
    cl_group.add_argument("--var_min_mean", type=float, default=None,
                          help="方差趋势拟合的最低平均表达")
    cl_group.add_argument("--min_rank", type=int, default=None,
                          help="保留主成分数下限")
    cl_group.add_argument("--max_rank", type=int, default=None,
                          help="保留主成分数上限")
    cl_group.add_argument("--batch_correction", default=None, choices=["harmony", "combat", "none"],
                          help="批次校正方法")
    cl_group.add_argument("--neighbor_method", default=None, choices=["exact", "approx"],
                          help="近邻搜索方法")
    cl_group.add_argument("--k", type=int, default=None,
                          help="SNN 图近邻数")
    cl_group.add_argument("--weighting", default=None, choices=["rank", "number", "jaccard"],
                          help="SNN 边权重类型")
    cl_group.add_argument("--cluster_method", default=None, choices=["walktrap", "leiden", "louvain"],
                          help="社区检测方法")
    cl_group.add_argument("--resolution", type=float, default=None,
                          help="leiden / louvain 分辨率")
    cl_group.add_argument("--embedding", default=None, choices=["tsne", "umap", "none"],
                          help="二维嵌入方法")
    cl_group.add_argument("--perplexity", type=float, default=None,
                          help="t-SNE perplexity")
    cl_group.add_argument("--seed", type=int, default=None,
                          help="聚类与嵌入的随机种子")

    # 标记基因参数
    mk_group = parser.add_argument_group('标记基因参数')
    mk_group.add_argument("--test", default=None, choices=["wilcox", "t"],
                          help="差异检验方法")
    mk_group.add_argument("--direction", default=None, choices=["up", "down", "any"],
                          help="标记基因方向")
    mk_group.add_argument("--pval_type", default=None, choices=["any", "some", "all"],
                          help="p 值合并方式")
    mk_group.add_argument("--marker_fdr", type=float, default=None,
                          help="统计显著标记基因的 FDR 阈值")
    mk_group.add_argument("--n_top", type=int, default=None,
                          help="每个聚类报告的标记基因数")
    mk_group.add_argument("--cell_cycle", action='store_true', default=None,
                          help="运行细胞周期分期")

    return parser.parse_args(argv)


def build_config(args) -> dict:
    """默认参数 < 配置文件 < 命令行参数"""
    config = load_config(args.config)
    overrides = {
        'input': {
            'backed': args.backed,
            'min_total': args.min_total,
            'gene_annotation': args.gene_annotation
        },
        'cell_calling': {
            'run': False if args.skip_cell_calling else None,
            'lower': args.lower,
            'retain': args.retain,
            'niters': args.niters,
            'fdr_threshold': args.empty_fdr,
            'test_ambient': args.test_ambient,
            'random_state': args.empty_seed,
            'n_jobs': args.n_jobs
        },
        'qc': {
            'nmads': args.nmads,
            'batch_key': args.batch_key,
            'min_genes': args.min_genes,
            'max_genes': args.max_genes,
            'max_pct_mito': args.max_pct_mito,
            'doublet_method': args.doublet_method,
            'doublet_threshold': args.doublet_threshold
        },
        'normalization': {
            'use_quick_cluster': False if args.no_quick_cluster else None,
            'min_size': args.min_size,
            'min_mean': args.norm_min_mean
        },
        'variance': {
            'trend_model': args.trend_model,
            'min_mean': args.var_min_mean
        },
        'clustering': {
            'min_rank': args.min_rank,
            'max_rank': args.max_rank,
            'batch_key': args.batch_key,
            'batch_correction': args.batch_correction,
            'neighbor_method': args.neighbor_method,
            'k': args.k,
            'weighting': args.weighting,
            'method': args.cluster_method,
            'resolution': args.resolution,
            'embedding': args.embedding,
            'perplexity': args.perplexity,
            'random_state': args.seed
        },
        'markers': {
            'test': args.test,
            'direction': args.direction,
            'pval_type': args.pval_type,
            'fdr_threshold': args.marker_fdr,
            'n_top': args.n_top,
            'cell_cycle': args.cell_cycle
        }
    }
    return resolve_params(config, overrides)


def _step_banner(index: int, title: str):
    print("\n" + "🔹" * 50)
    print(f"步骤 {index}/6: {title}")
    print("🔹" * 50)


def _fail(ckpt: CheckpointManager, step: str, title: str, error: Exception):
    print(f"\n❌ {title}失败: {str(error)}")
    traceback.print_exc()
    ckpt.mark_step_failed(step, error)
    sys.exit(1)


def load_data(args, config: dict):
    """按输入类型读取原始数据"""
    input_cfg = config['input']
    if input_cfg['backed'] and (args.input is None or not args.input.endswith('.h5ad')):
        raise ValueError("backed 模式只支持单个 h5ad 输入 (--input *.h5ad)")
    if args.sample_info is not None:
        adata = read_sample(args.sample_info)
    elif input_cfg['backed']:
        with BackedMatrix(args.input) as backed:
            totals = backed.row_sums()
            keep = totals >= input_cfg['min_total']
            print(f"   backed 模式预过滤: 保留 {int(keep.sum()):,}/{len(keep):,} 个条码 (总计数 ≥ {input_cfg['min_total']})")
            adata = backed.subset(keep)
        if 'SampleName' not in adata.obs:
            adata.obs['SampleName'] = os.path.basename(args.input)[:-len('.h5ad')]
    else:
        adata = read_input(args.input)

    if input_cfg['gene_annotation']:
        annotate_genes(adata, input_cfg['gene_annotation'])
    return adata


def main(argv=None):
    """
    单细胞RNA-seq数据处理主流程（支持断点续传）
    """
    args = get_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    os.makedirs(args.output_dir, exist_ok=True)

    # 初始化断点管理器
    ckpt = CheckpointManager(args.output_dir)

    if args.reset:
        ckpt.reset()

    if args.show_progress:
        ckpt.print_status()
        return

    if args.input is None and args.sample_info is None and not ckpt.is_completed('step1_read'):
        print("❌ 请通过 --input 或 --sample_info 指定输入数据")
        sys.exit(1)

    if args.resume or ckpt.checkpoints:
        ckpt.print_status()
        if args.resume:
            print("🔄 从上次断点继续运行...\n")

    config = build_config(args)
    config_path = os.path.join(args.output_dir, 'config_used.yaml')
    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(config, f, allow_unicode=True, sort_keys=False)
    compression = config['output']['compression']

    mem_monitor = MemoryMonitor(log_file=os.path.join(args.output_dir, 'memory.log'))
    mem_monitor.checkpoint("流程开始")

    cc_cfg = config['cell_calling']
    cl_cfg = config['clustering']
    print("\n" + "=" * 100)
    print(" " * 30 + "单细胞RNA-seq数据处理流程")
    print("=" * 100)
    print(f"\n📋 配置参数：")
    print(f"  输入: {args.input or args.sample_info}")
    print(f"  输出目录: {args.output_dir}")
    print(f"  断点文件: {ckpt.checkpoint_file}")
    print(f"  参数记录: {config_path}")
    print(f"\n🔬 空液滴识别与质控：")
    print(f"  emptyDrops: {'是' if cc_cfg['run'] else '否'} (lower={cc_cfg['lower']}, niters={cc_cfg['niters']}, FDR={cc_cfg['fdr_threshold']})")
    print(f"  MAD 倍数: {config['qc']['nmads']}")
    print(f"\n🧬 分析参数：")
    print(f"  技术方差模型: {config['variance']['trend_model']}")
    print(f"  主成分数范围: [{cl_cfg['min_rank']}, {cl_cfg['max_rank']}]")
    print(f"  SNN 图: k={cl_cfg['k']}, {cl_cfg['weighting']}, {cl_cfg['neighbor_method']}")
    print(f"  聚类方法: {cl_cfg['method']}")
    print(f"  标记基因: {config['markers']['test']} / {config['markers']['direction']} / {config['markers']['pval_type']}")
    print("=" * 100 + "\n")

    paths = {
        'step1_read': os.path.join(args.output_dir, "01_raw_data.h5ad"),
        'step2_cell_calling': os.path.join(args.output_dir, "02_cells.h5ad"),
        'step3_qc': os.path.join(args.output_dir, "03_filtered_data.h5ad"),
        'step4_normalize': os.path.join(args.output_dir, "04_normalized_data.h5ad"),
        'step5_cluster': os.path.join(args.output_dir, "05_clustered_data.h5ad"),
        'step6_markers': os.path.join(args.output_dir, "06_final_data.h5ad")
    }

    # 处理跳过命令：目标之前的步骤视为已完成
    if args.skip_to is not None:
        target = SKIP_TARGETS[args.skip_to]
        for step in ckpt.steps_order[:ckpt.steps_order.index(target)]:
            if not ckpt.is_completed(step):
                print(f"⏭️  跳过步骤: {step}")
                ckpt.save_checkpoint(step, file=paths[step])

    adata = None

    # ============================================
    # 步骤 1: 读取数据
    # ============================================
    step = 'step1_read'
    if not ckpt.is_completed(step):
        _step_banner(1, "读取数据")
        try:
            adata = load_data(args, config)
            save_h5ad(adata, paths[step], compression=compression)

            print(f"\n✅ 读取完成:")
            print(f"  条码数: {adata.n_obs:,}")
            print(f"  基因数: {adata.n_vars:,}")
            print(f"  样品数: {adata.obs['SampleName'].nunique()}")

            ckpt.save_checkpoint(step, file=paths[step], n_barcodes=adata.n_obs, n_genes=adata.n_vars)
            mem_monitor.checkpoint("数据读取完成")
        except Exception as e:
            _fail(ckpt, step, "读取数据", e)

    # ============================================
    # 步骤 2: 空液滴识别
    # ============================================
    step = 'step2_cell_calling'
    if not ckpt.is_completed(step):
        _step_banner(2, "空液滴识别")
        try:
            if adata is None:
                adata = read_h5ad(paths['step1_read'])
            if cc_cfg['run']:
                params = {key: value for key, value in cc_cfg.items() if key != 'run'}
                adata_cells, results = call_cells(adata, output_dir=args.output_dir, **params)
                save_csv(results, os.path.join(args.output_dir, "02_empty_drops.csv"))
            else:
                print("⚠️  未进行空液滴识别，所有条码视为细胞")
                adata_cells = adata
            save_h5ad(adata_cells, paths[step], compression=compression)

            print(f"\n✅ 空液滴识别完成:")
            print(f"  细胞数: {adata_cells.n_obs:,}")

            ckpt.save_checkpoint(step, file=paths[step], n_cells=adata_cells.n_obs)
            mem_monitor.checkpoint("空液滴识别完成")

            adata = adata_cells
            del adata_cells
            gc.collect()
        except Exception as e:
            _fail(ckpt, step, "空液滴识别", e)
    else:
        adata = None

    # ============================================
    # 步骤 3: 质量控制
    # ============================================
    step = 'step3_qc'
    if not ckpt.is_completed(step):
        _step_banner(3, "质量控制")
        try:
            if adata is None:
                adata = read_h5ad(paths['step2_cell_calling'])
            adata_filtered, qc_stats = quality_control(
                adata, return_stats=True, output_dir=args.output_dir, **config['qc']
            )
            save_h5ad(adata_filtered, paths[step], compression=compression)
            qc_stats_path = os.path.join(args.output_dir, "03_qc_statistics.csv")
            save_csv(qc_stats, qc_stats_path, index=False)

            print(f"\n✅ 质控完成:")
            print(f"  过滤后细胞数: {adata_filtered.n_obs:,}")
            print(f"  统计已保存: {qc_stats_path}")

            ckpt.save_checkpoint(step, file=paths[step], n_cells_after=adata_filtered.n_obs)
            mem_monitor.checkpoint("质量控制完成")

            adata = adata_filtered
            del adata_filtered
            gc.collect()
        except Exception as e:
            _fail(ckpt, step, "质控", e)
    else:
        adata = None

    # ============================================
    # 步骤 4: 标准化
    # ============================================
    step = 'step4_normalize'
    if not ckpt.is_completed(step):
        _step_banner(4, "标准化")
        try:
            if adata is None:
                adata = read_h5ad(paths['step3_qc'])
            adata = normalize_data(
                adata, random_state=cl_cfg['random_state'], output_dir=args.output_dir,
                **config['normalization']
            )
            save_h5ad(adata, paths[step], compression=compression)

            print(f"\n✅ 标准化完成:")
            print(f"  预聚类数: {adata.obs['quick_cluster'].nunique()}")

            ckpt.save_checkpoint(step, file=paths[step], n_quick_clusters=adata.obs['quick_cluster'].nunique())
            mem_monitor.checkpoint("标准化完成")
        except Exception as e:
            _fail(ckpt, step, "标准化", e)
    else:
        adata = None

    # ============================================
    # 步骤 5: 聚类
    # ============================================
    step = 'step5_cluster'
    if not ckpt.is_completed(step):
        _step_banner(5, "方差建模、降维与聚类")
        try:
            if adata is None:
                adata = read_h5ad(paths['step4_normalize'])
            var_cfg = config['variance']
            adata = data_clustering(
                adata,
                trend_model=var_cfg['trend_model'],
                min_mean=var_cfg['min_mean'],
                frac=var_cfg['frac'],
                output_dir=args.output_dir,
                **cl_cfg
            )
            save_h5ad(adata, paths[step], compression=compression)

            n_clusters = adata.obs['cluster'].nunique()
            print(f"\n✅ 聚类完成:")
            print(f"  聚类数: {n_clusters}")

            ckpt.save_checkpoint(step, file=paths[step], n_clusters=n_clusters,
                                 n_pcs=adata.uns['pca']['n_pcs_kept'])
            mem_monitor.checkpoint("聚类完成")
        except Exception as e:
            _fail(ckpt, step, "聚类", e)
    else:
        adata = None

    # ============================================
    # 步骤 6: 标记基因
    # ============================================
    step = 'step6_markers'
    if not ckpt.is_completed(step):
        _step_banner(6, "标记基因检测")
        try:
            if adata is None:
                adata = read_h5ad(paths['step5_cluster'])
            mk_cfg = dict(config['markers'])
            run_cell_cycle = mk_cfg.pop('cell_cycle')
            marker_detection(adata, groupby='cluster', output_dir=args.output_dir, **mk_cfg)
            if run_cell_cycle:
                print("\n细胞周期分期...")
                classify_cell_cycle(adata, gene_symbols='symbol' if 'symbol' in adata.var else None)
            save_h5ad(adata, paths[step], compression=compression)

            print(f"\n✅ 标记基因检测完成:")
            print(f"  结果已保存: {os.path.join(args.output_dir, 'markers')}/")

            ckpt.save_checkpoint(step, file=paths[step])
            mem_monitor.checkpoint("标记基因检测完成")
        except Exception as e:
            _fail(ckpt, step, "标记基因检测", e)
    else:
        print("\n✓ 步骤6已完成，跳过\n")

    # ============================================
    # 完成总结
    # ============================================
    mem_monitor.checkpoint("流程完成")

    mem_summary = mem_monitor.get_summary()
    mem_report_path = os.path.join(args.output_dir, "memory_usage.csv")
    mem_summary.to_csv(mem_report_path, index=False)

    mem_plot_path = os.path.join(args.output_dir, "memory_usage.png")
    mem_monitor.plot_memory_usage(mem_plot_path)

    print("\n" + "=" * 100)
    print(" " * 40 + "🎉 流程完成！")
    print("=" * 100)
    print(f"\n📁 所有结果已保存至: {args.output_dir}/")
    print("\n📄 生成的文件：")
    print(f"  1. 01_raw_data.h5ad           - 原始数据")
    print(f"  2. 02_cells.h5ad              - 空液滴识别后的细胞")
    print(f"  3. 03_filtered_data.h5ad      - 质控后数据")
    print(f"  4. 04_normalized_data.h5ad    - 标准化数据")
    print(f"  5. 05_clustered_data.h5ad     - 聚类结果")
    print(f"  6. 06_final_data.h5ad         - 最终结果（含标记基因汇总）")
    print(f"  7. markers/                   - 每个聚类的标记基因表")
    print(f"  8. memory_usage.csv / .png    - 内存使用报告")

    print("\n💡 使用提示：")
    print("  • 使用 --resume 参数从断点继续运行")
    print("  • 使用 --reset 参数重置所有断点")
    print("  • 使用 --show-progress 查看当前进度")
    print("  • 使用 --config 指定 YAML 参数文件")

    print("\n📊 流程统计：")
    print(f"  峰值内存: {mem_monitor.get_peak_memory():.2f} GB")
    print(f"  完成进度: {ckpt.get_progress_percentage():.0f}%")

    print("=" * 100 + "\n")


if __name__ == "__main__":
    main()
